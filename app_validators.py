# app_validators.py
from __future__ import annotations

from collections.abc import Mapping, Sequence
from dataclasses import dataclass
import io
from pathlib import Path
from typing import Any, Dict, List
from zipfile import ZipFile

import numpy as np
import pandas as pd


__all__ = [
    "ALLOWED_EXTENSIONS",
    "InvalidInputError",
    "is_allowed_file",
    "read_anytabular",
    "records_from_frame",
    "validate_records",
]

ALLOWED_EXTENSIONS = {"csv", "xlsx", "zip"}


@dataclass
class InvalidInputError(Exception):
    """Raised when the rows handed to the analyzer are empty or malformed."""

    message: str
    sample_rows: List[Any] | None = None

    def __str__(self) -> str:  # pragma: no cover
        return self.message


def validate_records(records: Any) -> List[Mapping[str, Any]]:
    """
    Check the analyzer precondition and return the rows as a list.
    - records must be a non-empty list/tuple
    - every row must be a mapping (column -> scalar)
    - the first row must name at least one column
    - column names must be strings
    Column sets are not required to match; columns are read from the first row.
    """
    if records is None or isinstance(records, (str, bytes, Mapping)) or not isinstance(records, Sequence):
        raise InvalidInputError("Invalid data provided: expected a list of rows.")
    rows = list(records)
    if not rows:
        raise InvalidInputError("No data provided for analysis.")

    bad = [i for i, row in enumerate(rows) if not isinstance(row, Mapping)]
    if bad:
        raise InvalidInputError(
            f"Rows must be objects mapping column names to values (bad rows: {', '.join(map(str, bad[:10]))}).",
            sample_rows=[rows[i] for i in bad[:5]],
        )
    if not rows[0]:
        raise InvalidInputError("The first row has no columns.", sample_rows=rows[:1])

    bad_keys = [i for i, row in enumerate(rows) if not all(isinstance(k, str) for k in row)]
    if bad_keys:
        raise InvalidInputError(
            f"Column names must be strings (bad rows: {', '.join(map(str, bad_keys[:10]))}).",
            sample_rows=[rows[i] for i in bad_keys[:5]],
        )
    return rows


def is_allowed_file(filename: str) -> bool:
    ext = Path(filename).suffix.lower().lstrip(".")
    return ext in ALLOWED_EXTENSIONS


def _read_first_sheet(b: bytes) -> pd.DataFrame:
    # Only the first worksheet is analysed
    return pd.read_excel(io.BytesIO(b), sheet_name=0, engine="openpyxl")


def read_anytabular(path_or_file, filename: str | None = None) -> pd.DataFrame:
    """
    Load an upload (path or file-like) into a single DataFrame.
    - .csv  : read via pandas
    - .xlsx : first worksheet
    - .zip  : first .xlsx inside, otherwise all .csv files inside concatenated
    Raises InvalidInputError on unsupported or empty inputs.
    """
    name = filename or (str(path_or_file) if isinstance(path_or_file, (str, Path)) else "")
    ext = Path(name).suffix.lower()

    if hasattr(path_or_file, "read"):
        raw = path_or_file.read()
    else:
        with open(path_or_file, "rb") as f:
            raw = f.read()

    if ext == ".csv":
        df = pd.read_csv(io.BytesIO(raw))
    elif ext == ".xlsx":
        df = _read_first_sheet(raw)
    elif ext == ".zip":
        with ZipFile(io.BytesIO(raw), "r") as zf:
            xlsx_names = [n for n in zf.namelist() if n.lower().endswith(".xlsx")]
            if xlsx_names:
                df = _read_first_sheet(zf.read(xlsx_names[0]))
            else:
                csv_names = sorted(n for n in zf.namelist() if n.lower().endswith(".csv"))
                if not csv_names:
                    raise InvalidInputError("ZIP does not contain a readable .xlsx workbook or any .csv files.")
                frames = []
                for n in csv_names:
                    with zf.open(n) as fh:
                        frames.append(pd.read_csv(fh))
                df = pd.concat(frames, ignore_index=True, sort=False)
    else:
        raise InvalidInputError(f"Unsupported file type: {ext or '<none>'}")

    if df is None or df.empty:
        raise InvalidInputError("No data found in the file.")
    return df


def _plain(value: Any) -> Any:
    """numpy/pandas scalars -> plain Python; NaN/NaT -> None."""
    if value is None:
        return None
    if isinstance(value, float) and np.isnan(value):
        return None
    if value is pd.NaT:
        return None
    if isinstance(value, np.generic):
        value = value.item()
        if isinstance(value, float) and np.isnan(value):
            return None
    if isinstance(value, pd.Timestamp):
        return value.isoformat()
    return value


def records_from_frame(df: pd.DataFrame) -> List[Dict[str, Any]]:
    """Turn a DataFrame into JSON-ready row mappings (column names as strings)."""
    cols = [str(c).strip() for c in df.columns]
    return [
        {col: _plain(v) for col, v in zip(cols, row)}
        for row in df.itertuples(index=False, name=None)
    ]
