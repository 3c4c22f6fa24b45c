"""Per-reporter track record (``reporter-profiles.json``)."""

import logging
from pathlib import Path

from pydantic import ValidationError

from bugtriage.jsonio import StateFileError, read_state, write_json
from bugtriage.models import ReporterProfile, utc_now_iso

logger = logging.getLogger(__name__)

PROFILES_FILE = "reporter-profiles.json"


class ReporterProfileStore:
    def __init__(self, data_dir: str | Path):
        self.path = Path(data_dir) / PROFILES_FILE
        data = read_state(self.path, default={})
        try:
            self.profiles: dict[str, ReporterProfile] = {
                user_id: ReporterProfile.model_validate(raw)
                for user_id, raw in (data.get("profiles") or {}).items()
            }
        except (ValidationError, AttributeError) as e:
            raise StateFileError(f"Malformed state file {self.path}: {e}") from e

    def save(self) -> None:
        write_json(self.path, {
            "profiles": {uid: p.to_json_dict() for uid, p in self.profiles.items()},
            "lastUpdated": utc_now_iso(),
        })

    def get(self, user_id: str) -> ReporterProfile | None:
        return self.profiles.get(user_id)

    def update(
        self, user_id: str, name: str, is_engineer: bool | None = None,
    ) -> ReporterProfile:
        """Create or refresh a profile's name/role without touching its counts."""
        profile = self.profiles.get(user_id)
        if profile is None:
            profile = ReporterProfile(user_id=user_id, name=name)
            self.profiles[user_id] = profile
        profile.name = name
        if is_engineer is not None:
            profile.is_engineer = is_engineer
        self.save()
        return profile

    def record_report(self, user_id: str, name: str) -> ReporterProfile:
        profile = self.profiles.get(user_id) or self.update(user_id, name)
        profile.report_count += 1
        self.save()
        return profile

    def record_confirmed_bug(self, user_id: str) -> None:
        profile = self.profiles.get(user_id)
        if profile is None:
            logger.warning("No reporter profile for %s, not recording bug", user_id)
            return
        profile.confirmed_bugs += 1
        self.save()
