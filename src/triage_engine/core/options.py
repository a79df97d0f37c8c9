"""Processing-option presets, cost and time estimates, and pre-dispatch warnings.

Estimates start from a per-issue baseline (the average cost and duration of
a ten-iteration build run with the default model) and scale it by mode,
model and iteration budget. The result is a range, not a quote: the low end
is half the point estimate, the high end one and a half times it for cost
and twice it for time.
"""

from __future__ import annotations

from collections.abc import Sequence
from dataclasses import dataclass

from triage_engine.core.history import HistoryEntry
from triage_engine.models.issue import Issue, Severity
from triage_engine.models.session import ProcessingOptions
from triage_engine.utils.async_helpers import ValidationError

DEFAULT_COST_PER_ISSUE = 0.40
DEFAULT_SECONDS_PER_ISSUE = 240
BASELINE_ITERATIONS = 10

MODE_MULTIPLIERS = {"plan": 0.5, "build": 1.0}
MODEL_MULTIPLIERS = {"sonnet": 1.0, "opus": 5.0}

# Warning thresholds
OPUS_BATCH_WARN_AT = 5
LONG_RUN_ITERATIONS = 10
LONG_RUN_ISSUES = 3
LARGE_BATCH = 10


@dataclass(frozen=True)
class ProcessingPreset:
    id: str
    name: str
    description: str
    options: ProcessingOptions


PRESETS: tuple[ProcessingPreset, ...] = (
    ProcessingPreset(
        "quick-fix",
        "Quick fix",
        "Small, obvious fixes pushed straight away",
        ProcessingOptions(mode="build", model="sonnet", max_iterations=5, auto_push=True),
    ),
    ProcessingPreset(
        "careful-fix",
        "Careful fix",
        "Plan first, keep the branch local and watch CI",
        ProcessingOptions(
            mode="plan", model="sonnet", max_iterations=10, auto_push=False, ci_awareness=True
        ),
    ),
    ProcessingPreset(
        "complex-issue",
        "Complex issue",
        "Stronger model with a large budget that repairs CI failures",
        ProcessingOptions(
            mode="build",
            model="opus",
            max_iterations=20,
            auto_push=True,
            ci_awareness=True,
            auto_fix_ci=True,
        ),
    ),
    ProcessingPreset(
        "security-audit",
        "Security audit",
        "Plan-only review with the stronger model",
        ProcessingOptions(mode="plan", model="opus", max_iterations=15, auto_push=False),
    ),
)


def get_preset(preset_id: str) -> ProcessingPreset:
    """Look up a preset.

    Raises:
        ValidationError: If no preset has this id.
    """
    for preset in PRESETS:
        if preset.id == preset_id:
            return preset
    raise ValidationError(f"Unknown processing preset: {preset_id!r}")


def match_preset(options: ProcessingOptions) -> str | None:
    """Id of the preset whose options equal ``options``; None for custom options."""
    return next((preset.id for preset in PRESETS if preset.options == options), None)


@dataclass(frozen=True)
class CostEstimate:
    min: float
    max: float
    average: float
    per_issue: float
    per_iteration: float
    currency: str = "USD"


@dataclass(frozen=True)
class DurationEstimate:
    min_seconds: int
    max_seconds: int

    def describe(self) -> str:
        """``<1 minute``, ``~N minutes`` or ``A-B minutes``."""
        low, high = self.min_seconds // 60, self.max_seconds // 60
        if high < 1:
            return "<1 minute"
        if low == high:
            return f"~{low} minutes"
        return f"{low}-{high} minutes"


def _scale(options: ProcessingOptions) -> float:
    return MODE_MULTIPLIERS[options.mode] * (options.max_iterations / BASELINE_ITERATIONS)


def estimate_cost(
    options: ProcessingOptions,
    issue_count: int,
    cost_per_issue: float = DEFAULT_COST_PER_ISSUE,
) -> CostEstimate:
    """Estimated spend for running ``issue_count`` issues with ``options``.

    Args:
        options: Options the batch would run with.
        issue_count: Issues in the batch; negative counts are treated as 0.
        cost_per_issue: Baseline cost of one issue.
    """
    per_iteration = cost_per_issue / BASELINE_ITERATIONS * MODEL_MULTIPLIERS[options.model]
    per_iteration *= MODE_MULTIPLIERS[options.mode]
    per_issue = per_iteration * options.max_iterations
    average = per_issue * max(0, issue_count)
    return CostEstimate(
        min=round(average * 0.5, 2),
        max=round(average * 1.5, 2),
        average=round(average, 2),
        per_issue=round(per_issue, 4),
        per_iteration=round(per_iteration, 4),
    )


def average_seconds_per_issue(entries: Sequence[HistoryEntry]) -> int:
    """Mean run duration from history, or the default when there is none."""
    timed = [entry.duration_ms for entry in entries if entry.duration_ms > 0]
    if not timed:
        return DEFAULT_SECONDS_PER_ISSUE
    return max(1, sum(timed) // len(timed) // 1000)


def estimate_duration(
    options: ProcessingOptions,
    issue_count: int,
    seconds_per_issue: int = DEFAULT_SECONDS_PER_ISSUE,
) -> DurationEstimate:
    estimate = seconds_per_issue * max(0, issue_count) * _scale(options)
    return DurationEstimate(int(estimate * 0.5), int(estimate * 2.0))


def validation_warnings(options: ProcessingOptions, issues: Sequence[Issue]) -> list[str]:
    """Advisory warnings for dispatching ``issues`` with ``options``.

    Warnings never block a dispatch.
    """
    warnings: list[str] = []
    count = len(issues)

    if options.model == "opus" and count > OPUS_BATCH_WARN_AT:
        average = estimate_cost(options, count).average
        warnings.append(f"Using Opus for {count} issues may cost ~${average:.2f}")

    if options.model == "opus":
        simple = sum(1 for issue in issues if issue.severity in (Severity.LOW, Severity.INFO))
        if simple:
            warnings.append(f"{simple} issue(s) are LOW/INFO severity - Sonnet may be sufficient")

    if options.max_iterations > LONG_RUN_ITERATIONS and count > LONG_RUN_ISSUES:
        warnings.append(
            f"High iteration count ({options.max_iterations}) with {count} issues "
            "may take a long time"
        )

    if options.auto_fix_ci and not options.ci_awareness:
        warnings.append("Auto-fix CI requires CI awareness to be enabled")

    if count > LARGE_BATCH:
        warnings.append(f"Processing {count} issues at once - consider smaller batches")

    return warnings


@dataclass(frozen=True)
class ProcessingPreview:
    """What a dispatch would cost and what to double-check before sending it."""

    options: ProcessingOptions
    issue_count: int
    cost: CostEstimate
    duration: DurationEstimate
    warnings: tuple[str, ...]
    preset_id: str | None


def preview_processing(
    options: ProcessingOptions,
    issues: Sequence[Issue],
    history: Sequence[HistoryEntry] = (),
) -> ProcessingPreview:
    """Estimate and check a batch; durations use ``history`` when it has timings."""
    count = len(issues)
    return ProcessingPreview(
        options=options,
        issue_count=count,
        cost=estimate_cost(options, count),
        duration=estimate_duration(options, count, average_seconds_per_issue(history)),
        warnings=tuple(validation_warnings(options, issues)),
        preset_id=match_preset(options),
    )
