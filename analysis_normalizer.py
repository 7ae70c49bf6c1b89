# analysis_normalizer.py
from __future__ import annotations

import json
import logging
from typing import Any, Dict, List, Mapping, Protocol, Sequence

import numpy as np
import pandas as pd

from app_validators import InvalidInputError, validate_records

__all__ = [
    "AnalysisProvider",
    "InvalidInputError",
    "MalformedResponseError",
    "ProviderError",
    "analyze",
    "build_default_analysis",
    "build_prompt",
    "chart_shape_problems",
    "coerce_number",
    "extract_json_block",
    "merge_with_default",
    "missing_fields",
]

logger = logging.getLogger(__name__)

# Rows sent to the model (prompt size control); the fallback always sees all rows
MAX_SAMPLE_ROWS = 50
MAX_CHART_POINTS = 10

REQUIRED_FIELDS: tuple[str, ...] = ("summary", "keyMetrics", "insights", "recommendations", "charts")
RESULT_FIELDS: tuple[str, ...] = REQUIRED_FIELDS + ("rawData",)

CHART_PALETTE: tuple[str, ...] = (
    "#4361EE",
    "#3A0CA3",
    "#7209B7",
    "#F72585",
    "#4CC9F0",
    "#4895EF",
    "#560BAD",
    "#B5179E",
    "#F15BB5",
    "#FEE440",
)

DEFAULT_SUMMARY = "This is an automated analysis of the provided data."
DEFAULT_RECOMMENDATION = "Review the data for more detailed insights"


class ProviderError(Exception):
    """The analysis provider could not produce a response (transport, quota, timeout)."""


class MalformedResponseError(ValueError):
    """The provider answered, but not with a usable JSON object."""


class AnalysisProvider(Protocol):
    def generate(self, prompt_text: str, timeout: float | None = None) -> str: ...


# ---- numeric coercion --------------------------------------------------------


def coerce_number(value: Any) -> int | float | None:
    """
    Best-effort numeric reading of a single cell.
    - ints/floats pass through (NaN/inf are rejected)
    - bools count as 1/0
    - strings are stripped; thousands separators and '$' are tolerated
    Returns None when the value is not numeric.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if np.isfinite(value) else None
    if isinstance(value, str):
        # Remove common formatting noise, then to_numeric
        cleaned = value.strip().replace(",", "").replace("$", "")
        num = pd.to_numeric(cleaned, errors="coerce")
        if pd.isna(num) or not np.isfinite(num):
            return None
        return float(num)
    return None


# ---- prompt --------------------------------------------------------------------

_SCHEMA_TEXT = """{
  "summary": "string",
  "keyMetrics": [
    {
      "name": "string",
      "value": number,
      "change": number,
      "trend": "up|down|stable"
    }
  ],
  "insights": ["string"],
  "recommendations": ["string"],
  "charts": [
    {
      "type": "bar|line|pie|scatter",
      "title": "string",
      "data": {
        "labels": ["string"],
        "datasets": [
          {
            "label": "string",
            "data": [number],
            "backgroundColor": ["string"],
            "borderColor": "string",
            "fill": boolean
          }
        ]
      }
    }
  ],
  "rawData": [
    {
      "categories": ["string"],
      "values": [number]
    }
  ]
}"""


def build_prompt(sample: Sequence[Mapping[str, Any]]) -> str:
    """Render the sampled rows plus the expected output schema as one prompt."""
    data_str = json.dumps(list(sample), indent=2, default=str, ensure_ascii=False)
    return (
        "Analyze the following financial data and provide a comprehensive breakdown:\n"
        f"{data_str}\n\n"
        "Please provide:\n"
        "1. A summary of the data\n"
        "2. Key metrics and their trends\n"
        "3. Important insights\n"
        "4. Actionable recommendations\n"
        "5. Chart configurations for visualizing the data (provide at least 2-3 different chart types)\n"
        "6. Raw data arrays for custom visualizations\n\n"
        "Format the response as a JSON object with the following structure:\n"
        f"{_SCHEMA_TEXT}\n\n"
        "Rules:\n"
        "• trend must be one of: up, down, stable.\n"
        "• chart type must be one of: bar, line, pie, scatter.\n"
        "• Every dataset's data array must have the same length as the chart's labels.\n"
        "IMPORTANT: The response should be valid parseable JSON with no markdown formatting."
    )


# ---- response parsing ----------------------------------------------------------


def _reject_constant(name: str) -> Any:
    # NaN/Infinity would make the caller-facing JSON invalid
    raise ValueError(f"non-finite constant {name}")


def _finite_float(raw: str) -> float:
    num = float(raw)
    if not np.isfinite(num):
        raise ValueError(f"non-finite number {raw}")
    return num


def extract_json_block(text: str) -> Dict[str, Any]:
    """
    Parse the span from the first '{' to the last '}' (inclusive).
    Tolerates prose or markdown fences around the payload.
    Raises MalformedResponseError when no JSON object can be read.
    """
    if not text or not text.strip():
        raise MalformedResponseError("empty response")
    start = text.find("{")
    end = text.rfind("}")
    if start == -1 or end < start:
        raise MalformedResponseError("no JSON object found in response")
    try:
        parsed = json.loads(text[start : end + 1], parse_constant=_reject_constant, parse_float=_finite_float)
    except (ValueError, RecursionError) as e:
        raise MalformedResponseError(f"invalid JSON: {e}") from e
    if not isinstance(parsed, dict):
        raise MalformedResponseError(f"expected a JSON object, got {type(parsed).__name__}")
    return parsed


def _field_ok(name: str, value: Any) -> bool:
    if value is None:
        return False
    if name == "summary":
        return isinstance(value, str) and bool(value.strip())
    return isinstance(value, list)


def missing_fields(candidate: Mapping[str, Any]) -> List[str]:
    """Required top-level fields that are absent, null, or of the wrong type."""
    return [f for f in REQUIRED_FIELDS if not _field_ok(f, candidate.get(f))]


def merge_with_default(candidate: Mapping[str, Any], default: Mapping[str, Any]) -> Dict[str, Any]:
    """Field-by-field merge: the provider's value wins whenever it is usable."""
    merged: Dict[str, Any] = {}
    for name in RESULT_FIELDS:
        value = candidate.get(name)
        merged[name] = value if _field_ok(name, value) else default[name]
    return merged


def chart_shape_problems(charts: Sequence[Any]) -> List[str]:
    """Describe charts whose datasets do not line up with their labels."""
    problems: List[str] = []
    for i, chart in enumerate(charts):
        data = chart.get("data") if isinstance(chart, dict) else None
        if not isinstance(data, dict):
            problems.append(f"chart {i}: missing data block")
            continue
        labels = data.get("labels")
        datasets = data.get("datasets")
        if not isinstance(labels, list) or not isinstance(datasets, list):
            problems.append(f"chart {i}: labels/datasets are not lists")
            continue
        for j, ds in enumerate(datasets):
            points = ds.get("data") if isinstance(ds, dict) else None
            if not isinstance(points, list) or len(points) != len(labels):
                size = len(points) if isinstance(points, list) else "n/a"
                problems.append(f"chart {i} dataset {j}: {size} points for {len(labels)} labels")
    return problems


# ---- deterministic fallback ----------------------------------------------------


def build_default_analysis(records: Sequence[Mapping[str, Any]]) -> Dict[str, Any]:
    """Locally computed result used when the provider is unusable."""
    first = records[0]
    columns = [str(c) for c in first.keys()]
    numeric_columns = [c for c in first.keys() if coerce_number(first[c]) is not None]

    head = records[:MAX_CHART_POINTS]
    if numeric_columns:
        col = numeric_columns[0]
        label = str(col)
        points = [coerce_number(row.get(col)) or 0 for row in head]
    else:
        label = "Values"
        points = [0 for _ in head]

    chart = {
        "type": "bar",
        "title": "Data Overview",
        "data": {
            "labels": [f"Entry {i + 1}" for i in range(len(head))],
            "datasets": [
                {
                    "label": label,
                    "data": points,
                    "backgroundColor": [CHART_PALETTE[i % len(CHART_PALETTE)] for i in range(len(points))],
                }
            ],
        },
    }

    # Row "mean": sum of numeric cells over the count of ALL cells in the row
    row_means: List[float] = []
    for row in records:
        cells = list(row.values())
        total = sum(coerce_number(v) or 0 for v in cells)
        row_means.append(total / len(cells) if cells else 0.0)

    n = len(records)
    return {
        "summary": DEFAULT_SUMMARY,
        "keyMetrics": [{"name": "Data Points", "value": n, "trend": "stable"}],
        "insights": [f"The data contains {n} entries"],
        "recommendations": [DEFAULT_RECOMMENDATION],
        "charts": [chart],
        "rawData": [{"categories": columns, "values": row_means}],
    }


# ---- entry point ---------------------------------------------------------------


def _call_provider(provider: AnalysisProvider, prompt: str, timeout: float | None) -> str:
    try:
        return provider.generate(prompt, timeout=timeout) or ""
    except ProviderError:
        raise
    except Exception as e:
        raise ProviderError(str(e) or type(e).__name__) from e


def analyze(
    records: Sequence[Mapping[str, Any]],
    provider: AnalysisProvider,
    timeout: float | None = None,
) -> Dict[str, Any]:
    """
    Produce an AnalysisResult for `records`.

    Only InvalidInputError (empty or malformed records) propagates. Provider
    failures, empty answers and unparsable JSON degrade to the deterministic
    fallback; partial answers are merged with it field by field.
    """
    rows = validate_records(records)
    sample = rows[:MAX_SAMPLE_ROWS]
    prompt = build_prompt(sample)

    try:
        text = _call_provider(provider, prompt, timeout)
    except ProviderError as e:
        logger.warning("Analysis provider failed, using fallback: %s", e)
        return build_default_analysis(rows)

    try:
        candidate = extract_json_block(text)
    except MalformedResponseError as e:
        logger.warning("Unusable analysis response (%s), using fallback. Text: %s", e, text[:300])
        return build_default_analysis(rows)

    missing = missing_fields(candidate)
    if missing:
        logger.warning("Incomplete analysis structure, missing %s; merging with defaults", ", ".join(missing))
        result = merge_with_default(candidate, build_default_analysis(rows))
    elif not isinstance(candidate.get("rawData"), list):
        result = merge_with_default(candidate, build_default_analysis(rows))
    else:
        result = {name: candidate[name] for name in RESULT_FIELDS}

    problems = chart_shape_problems(result["charts"])
    if problems:
        logger.warning("Provider charts passed through with shape problems: %s", "; ".join(problems))
    return result
