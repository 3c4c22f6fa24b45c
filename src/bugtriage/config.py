"""Runtime configuration and credential lookup.

Settings come from ``BUGTRIAGE_*`` environment variables (and
``LINEAR_TEAM_<TEAM>`` for team ids); CLI flags override them. Secrets are
read from the macOS keychain first and the environment second.
"""

import logging
import os
import shutil
import subprocess
from dataclasses import dataclass, field
from pathlib import Path

from bugtriage.models import Confidence, Team
from bugtriage.oracle import DEFAULT_MAX_TOKENS, DEFAULT_MODEL, DEFAULT_TIMEOUT

logger = logging.getLogger(__name__)

KEYCHAIN_ACCOUNT = "claude"

DEFAULT_CHANNEL_ID = "C3W35V43D"
DEFAULT_DATA_DIR = "data"
DEFAULT_REQUEST_DELAY = 0.1


def _env_bool(name: str, default: bool = False) -> bool:
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


@dataclass
class Config:
    slack_channel_id: str = DEFAULT_CHANNEL_ID
    linear_teams: dict[Team, str] = field(default_factory=dict)
    linear_bug_label_id: str | None = None
    model: str = DEFAULT_MODEL
    dry_run: bool = False
    verbose: bool = False
    min_confidence: Confidence = Confidence.LOW
    data_dir: Path = Path(DEFAULT_DATA_DIR)
    request_delay: float = DEFAULT_REQUEST_DELAY
    oracle_timeout: float = DEFAULT_TIMEOUT
    max_tokens: int = DEFAULT_MAX_TOKENS

    @classmethod
    def from_env(cls) -> "Config":
        env = os.environ
        teams = {
            team: env[f"LINEAR_TEAM_{team.name}"]
            for team in Team
            if env.get(f"LINEAR_TEAM_{team.name}")
        }
        return cls(
            slack_channel_id=env.get("BUGTRIAGE_CHANNEL_ID", DEFAULT_CHANNEL_ID),
            linear_teams=teams,
            linear_bug_label_id=env.get("BUGTRIAGE_BUG_LABEL_ID") or None,
            model=env.get("BUGTRIAGE_MODEL", DEFAULT_MODEL),
            dry_run=_env_bool("BUGTRIAGE_DRY_RUN"),
            verbose=_env_bool("BUGTRIAGE_VERBOSE"),
            min_confidence=Confidence(env.get("BUGTRIAGE_MIN_CONFIDENCE", Confidence.LOW)),
            data_dir=Path(env.get("BUGTRIAGE_DATA_DIR", DEFAULT_DATA_DIR)),
            request_delay=float(env.get("BUGTRIAGE_REQUEST_DELAY", DEFAULT_REQUEST_DELAY)),
            oracle_timeout=float(env.get("BUGTRIAGE_ORACLE_TIMEOUT", DEFAULT_TIMEOUT)),
            max_tokens=int(env.get("BUGTRIAGE_MAX_TOKENS", DEFAULT_MAX_TOKENS)),
        )

    @property
    def corpus_path(self) -> Path:
        return self.data_dir / "test-cases.json"

    @property
    def results_dir(self) -> Path:
        return self.data_dir / "results"

    @property
    def archive_dir(self) -> Path:
        return self.data_dir / "archive"

    @property
    def state_path(self) -> Path:
        return self.data_dir / ".last-run"


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

def get_keychain_credential(name: str) -> str | None:
    """Read a generic password from the macOS keychain, or None."""
    if not shutil.which("security"):
        return None
    result = subprocess.run(
        ["security", "find-generic-password", "-a", KEYCHAIN_ACCOUNT, "-s", name, "-w"],
        capture_output=True, text=True,
    )
    if result.returncode != 0:
        return None
    return result.stdout.strip() or None


def get_credential(name: str) -> str | None:
    """Keychain first, then the environment variable of the same name."""
    return get_keychain_credential(name) or os.environ.get(name) or None


def require_credential(name: str) -> str:
    value = get_credential(name)
    if not value:
        raise RuntimeError(
            f"Missing required credential: {name}. Set it in the macOS keychain "
            f'(account "{KEYCHAIN_ACCOUNT}") or as an environment variable.'
        )
    return value
