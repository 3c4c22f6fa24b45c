#!/usr/bin/env python3
"""Paired comparison of two evaluation reports (McNemar's test).

Only cases present and labeled in both reports count. The test looks at the
discordant pairs: b = cases A got wrong and B got right, c = the reverse.
"""

import logging
import math
from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from bugtriage.evaluate import EvaluationReport
from bugtriage.jsonio import StateFileError

logger = logging.getLogger(__name__)

ALPHA = 0.05
Z_95 = 1.96

_EPS = 1e-10
_FPMIN = 1e-30
_MAX_ITERATIONS = 100

_LANCZOS_G = 7
_LANCZOS_COEFFICIENTS = (
    0.99999999999980993,
    676.5203681218851,
    -1259.1392167224028,
    771.32342877765313,
    -176.61502916214059,
    12.507343278686905,
    -0.13857109526572012,
    9.9843695780195716e-6,
    1.5056327351493116e-7,
)


class ComparisonError(ValueError):
    """The two reports have no labeled cases in common."""


class Verdict(StrEnum):
    B_BETTER = "b_better"
    B_WORSE = "b_worse"
    INCONCLUSIVE = "inconclusive"


@dataclass
class ContingencyTable:
    a: int = 0  # both correct
    b: int = 0  # A wrong, B correct
    c: int = 0  # A correct, B wrong
    d: int = 0  # both wrong
    fixed: list[str] = field(default_factory=list)
    broken: list[str] = field(default_factory=list)
    excluded: list[str] = field(default_factory=list)

    @property
    def n(self) -> int:
        return self.a + self.b + self.c + self.d

    @property
    def a_correct(self) -> int:
        return self.a + self.c

    @property
    def b_correct(self) -> int:
        return self.a + self.b


@dataclass
class Comparison:
    table: ContingencyTable
    chi_square: float
    p_value: float
    ci: tuple[float, float]
    verdict: Verdict

    @property
    def excluded(self) -> list[str]:
        return self.table.excluded

    @property
    def difference(self) -> float:
        return (self.table.b - self.table.c) / self.table.n


def build_contingency_table(
    report_a: EvaluationReport, report_b: EvaluationReport,
) -> ContingencyTable:
    """Pair results by case id, in report A's order."""
    table = ContingencyTable()
    results_b = report_b.by_id()
    for result_a in report_a.results:
        result_b = results_b.get(result_a.id)
        if result_b is None:
            continue
        if result_a.action_match is None or result_b.action_match is None:
            table.excluded.append(result_a.id)
            continue
        if result_a.action_match and result_b.action_match:
            table.a += 1
        elif result_b.action_match:
            table.b += 1
            table.fixed.append(result_a.id)
        elif result_a.action_match:
            table.c += 1
            table.broken.append(result_a.id)
        else:
            table.d += 1
    return table


def ln_gamma(z: float) -> float:
    """Natural log of the gamma function (Lanczos, g=7)."""
    if z < 0.5:
        # Reflection formula.
        return math.log(math.pi / math.sin(math.pi * z)) - ln_gamma(1 - z)
    z -= 1
    x = _LANCZOS_COEFFICIENTS[0]
    for i in range(1, _LANCZOS_G + 2):
        x += _LANCZOS_COEFFICIENTS[i] / (z + i)
    t = z + _LANCZOS_G + 0.5
    return 0.5 * math.log(2 * math.pi) + (z + 0.5) * math.log(t) - t + math.log(x)


def gammainc(a: float, x: float) -> float:
    """Regularized lower incomplete gamma P(a, x).

    Series expansion for x < a + 1, Lentz's continued fraction otherwise.
    """
    if x <= 0 or a <= 0:
        return 0.0
    log_prefactor = -x + a * math.log(x) - ln_gamma(a)

    if x < a + 1:
        term = total = 1.0 / a
        for n in range(1, _MAX_ITERATIONS):
            term *= x / (a + n)
            total += term
            if abs(term) < _EPS * abs(total):
                break
        return total * math.exp(log_prefactor)

    b = x + 1 - a
    c = 1.0 / _FPMIN
    d = 1.0 / b
    h = d
    for i in range(1, _MAX_ITERATIONS):
        an = -i * (i - a)
        b += 2
        d = an * d + b
        if abs(d) < _FPMIN:
            d = _FPMIN
        c = b + an / c
        if abs(c) < _FPMIN:
            c = _FPMIN
        d = 1.0 / d
        delta = d * c
        h *= delta
        if abs(delta - 1) < _EPS:
            break
    return 1.0 - math.exp(log_prefactor) * h


def chi_square_sf(x: float, dof: int = 1) -> float:
    """Upper tail probability of the chi-square distribution."""
    if x <= 0:
        return 1.0
    return 1.0 - gammainc(dof / 2, x / 2)


def mcnemar(b: int, c: int) -> tuple[float, float]:
    """Continuity-corrected McNemar statistic and its p-value."""
    if b + c == 0:
        return 0.0, 1.0
    chi_square = (abs(b - c) - 1) ** 2 / (b + c)
    return chi_square, chi_square_sf(chi_square)


def confidence_interval(n: int, b: int, c: int, z: float = Z_95) -> tuple[float, float]:
    """Interval for the accuracy difference (B - A) over ``n`` paired cases."""
    if n <= 0:
        raise ComparisonError("No paired cases")
    diff = (b - c) / n
    variance = (b + c - (b - c) ** 2 / n) / n ** 2
    se = math.sqrt(max(variance, 0.0))
    return diff - z * se, diff + z * se


def compare(report_a: EvaluationReport, report_b: EvaluationReport) -> Comparison:
    table = build_contingency_table(report_a, report_b)
    if table.n == 0:
        raise ComparisonError(
            "Reports have no labeled cases in common "
            f"({len(table.excluded)} shared but unlabeled)"
        )
    chi_square, p_value = mcnemar(table.b, table.c)
    verdict = Verdict.INCONCLUSIVE
    if p_value < ALPHA:
        if table.b > table.c:
            verdict = Verdict.B_BETTER
        elif table.c > table.b:
            verdict = Verdict.B_WORSE
    return Comparison(
        table=table,
        chi_square=chi_square,
        p_value=p_value,
        ci=confidence_interval(table.n, table.b, table.c),
        verdict=verdict,
    )


def _describe(report: EvaluationReport, case_id: str) -> str:
    result = report.by_id()[case_id]
    return f"{result.expected.action} (got {result.actual.action})"


def run(path_a: str | Path, path_b: str | Path) -> int:
    for path in (path_a, path_b):
        if not Path(path).exists():
            logger.error("Report not found: %s", path)
            return 1
    try:
        report_a = EvaluationReport.load(path_a)
        report_b = EvaluationReport.load(path_b)
        result = compare(report_a, report_b)
    except (StateFileError, ComparisonError) as e:
        logger.error("%s", e)
        return 1

    t = result.table
    logger.info("")
    logger.info("=== Statistical Significance Test ===")
    logger.info("A: %s (%s)", path_a, report_a.prompt_version)
    logger.info("B: %s (%s)", path_b, report_b.prompt_version)
    logger.info("")
    logger.info("                 B correct  B wrong")
    logger.info("  A correct      %9d  %7d", t.a, t.c)
    logger.info("  A wrong        %9d  %7d", t.b, t.d)
    logger.info("")
    logger.info("Paired cases: %d (excluded unlabeled: %d)", t.n, len(t.excluded))
    logger.info("A accuracy: %d/%d (%.1f%%)", t.a_correct, t.n, t.a_correct / t.n * 100)
    logger.info("B accuracy: %d/%d (%.1f%%)", t.b_correct, t.n, t.b_correct / t.n * 100)
    logger.info("McNemar chi-square: %.4f", result.chi_square)
    logger.info("p-value: %.4f", result.p_value)
    logger.info("Difference (B - A): %.1f%%", result.difference * 100)
    logger.info("95%% CI: [%.1f%%, %.1f%%]", result.ci[0] * 100, result.ci[1] * 100)
    logger.info("")

    if result.verdict == Verdict.B_BETTER:
        logger.info("B is significantly better than A (p < %.2f).", ALPHA)
    elif result.verdict == Verdict.B_WORSE:
        logger.info("B is significantly worse than A (p < %.2f). Do not ship B.", ALPHA)
    else:
        logger.info(
            "No significant difference (p >= %.2f). More cases or a larger "
            "prompt change may be needed.", ALPHA,
        )

    if t.fixed:
        logger.info("")
        logger.info("Fixed in B (%d):", len(t.fixed))
        for case_id in t.fixed:
            logger.info("  %s: %s -> %s", case_id, _describe(report_a, case_id),
                        report_b.by_id()[case_id].actual.action)
    if t.broken:
        logger.info("")
        logger.info("Broken in B (%d):", len(t.broken))
        for case_id in t.broken:
            logger.info("  %s: %s -> %s", case_id, _describe(report_a, case_id),
                        report_b.by_id()[case_id].actual.action)
    return 0
