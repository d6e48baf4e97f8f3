from __future__ import annotations

import operator
import re
from dataclasses import asdict, dataclass
from typing import Any, Callable, Mapping, Optional, Sequence, Union

from errors import ThresholdParseError
from metrics import KIND_COUNTER, KIND_RATE, KIND_TREND, METRIC_KINDS, MetricsAggregator


COMPARATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

STATS_BY_KIND = {
    KIND_TREND: {"p", "avg", "min", "max", "med"},
    KIND_RATE: {"rate"},
    KIND_COUNTER: {"count", "rate"},
}

_EXPRESSION = re.compile(
    r"^\s*(?P<stat>p\(\s*(?P<pct>\d+(?:\.\d+)?)\s*\)|[a-z]+)"
    r"\s*(?P<op><=|>=|==|!=|<|>)"
    r"\s*(?P<value>[-+]?\d+(?:\.\d+)?)\s*$"
)


@dataclass(frozen=True)
class Threshold:
    metric: str
    expression: str
    stat: str
    arg: Optional[float]
    comparator: str
    value: float

    @property
    def stat_label(self) -> str:
        if self.stat == "p":
            return f"p({self.arg:g})"
        return self.stat

    def check(self, observed: float) -> bool:
        return COMPARATORS[self.comparator](observed, self.value)


@dataclass(frozen=True)
class ThresholdResult:
    metric: str
    expression: str
    observed_value: Optional[float]
    passed: bool

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


def parse_threshold(metric: str, expression: str) -> Threshold:
    kind = METRIC_KINDS.get(metric)
    if kind is None:
        raise ThresholdParseError(
            metric, expression, f"unknown metric, expected one of {', '.join(sorted(METRIC_KINDS))}"
        )
    match = _EXPRESSION.match(expression)
    if match is None:
        raise ThresholdParseError(metric, expression, "expected '<stat> <op> <number>', e.g. p(95) < 100")

    stat_text = match.group("stat")
    pct_text = match.group("pct")
    stat = "p" if pct_text is not None else stat_text
    arg = float(pct_text) if pct_text is not None else None
    if stat == "p" and arg is None:
        raise ThresholdParseError(metric, expression, "percentile needs an argument, e.g. p(95)")
    if stat not in STATS_BY_KIND[kind]:
        allowed = ", ".join(sorted(STATS_BY_KIND[kind]))
        raise ThresholdParseError(metric, expression, f"{kind} metrics support: {allowed}")
    if arg is not None and not 0.0 <= arg <= 100.0:
        raise ThresholdParseError(metric, expression, "percentile must be between 0 and 100")

    return Threshold(
        metric=metric,
        expression=expression.strip(),
        stat=stat,
        arg=arg,
        comparator=match.group("op"),
        value=float(match.group("value")),
    )


ThresholdInput = Union[Mapping[str, Sequence[str]], Sequence[Threshold]]


def parse_thresholds(thresholds: Mapping[str, Sequence[str]]) -> list[Threshold]:
    parsed: list[Threshold] = []
    for metric, expressions in thresholds.items():
        if isinstance(expressions, str):
            expressions = [expressions]
        for expression in expressions:
            parsed.append(parse_threshold(metric, expression))
    return parsed


def evaluate(
    thresholds: ThresholdInput,
    aggregator: MetricsAggregator,
    elapsed_s: Optional[float] = None,
) -> list[ThresholdResult]:
    """Evaluate every threshold against the aggregated metrics.

    A metric without data has no observed value and fails its thresholds.
    """
    if isinstance(thresholds, Mapping):
        parsed = parse_thresholds(thresholds)
    else:
        parsed = list(thresholds)

    results: list[ThresholdResult] = []
    for threshold in parsed:
        observed = aggregator.stat(threshold.metric, threshold.stat, threshold.arg, elapsed_s=elapsed_s)
        passed = observed is not None and threshold.check(observed)
        results.append(
            ThresholdResult(
                metric=threshold.metric,
                expression=threshold.expression,
                observed_value=observed,
                passed=passed,
            )
        )
    return results


def all_passed(results: Sequence[ThresholdResult]) -> bool:
    return all(result.passed for result in results)
