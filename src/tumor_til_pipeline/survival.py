from __future__ import annotations

from pathlib import Path

import pandas as pd

from .errors import SurvivalCsvError

SLIDE_ID_COLUMN = "slideID"
SURVIVAL_COLUMN = "survivalA"
CENSOR_COLUMN = "censorA.0yes.1no"
REQUIRED_COLUMNS: tuple[str, ...] = (SLIDE_ID_COLUMN, SURVIVAL_COLUMN, CENSOR_COLUMN)

PREDICTION_PREFIX = "prediction-"

SAMPLE_CSV = (
    "slideID,survivalA,censorA.0yes.1no\n"
    "001,1448,0\n"
    "002,1474,0\n"
    "003,4005,1\n"
)


def load_survival_table(path: Path) -> pd.DataFrame:
    """
    Read and validate the per-slide survival CSV.

    Column names are matched exactly. slideID is kept as a string so IDs like
    `001` survive. survivalA must be a positive integer number of days and
    censorA.0yes.1no must be 0 or 1.
    """
    try:
        df = pd.read_csv(path, dtype={SLIDE_ID_COLUMN: str})
    except (pd.errors.EmptyDataError, pd.errors.ParserError, UnicodeDecodeError) as e:
        raise SurvivalCsvError(f"cannot parse survival CSV {path}: {e}", hint=_schema_hint()) from e

    missing = [c for c in REQUIRED_COLUMNS if c not in df.columns]
    if missing:
        raise SurvivalCsvError(f"survival CSV {path} is missing column(s): {missing}", hint=_schema_hint())
    if df.empty:
        raise SurvivalCsvError(f"survival CSV {path} has no rows", hint=_schema_hint())

    ids = df[SLIDE_ID_COLUMN]
    if ids.isna().any() or (ids.str.strip() == "").any():
        raise SurvivalCsvError(f"survival CSV {path} has empty slideID values")
    dupes = sorted(ids[ids.duplicated()].unique())
    if dupes:
        raise SurvivalCsvError(f"survival CSV {path} has duplicate slideID values: {dupes}")

    survival = pd.to_numeric(df[SURVIVAL_COLUMN], errors="coerce")
    bad_survival = df.loc[survival.isna() | (survival <= 0) | (survival % 1 != 0), SLIDE_ID_COLUMN]
    if not bad_survival.empty:
        raise SurvivalCsvError(
            f"{SURVIVAL_COLUMN} must be a positive integer (days); invalid for slide(s): {list(bad_survival)}"
        )

    censor = pd.to_numeric(df[CENSOR_COLUMN], errors="coerce")
    bad_censor = df.loc[~censor.isin([0, 1]), SLIDE_ID_COLUMN]
    if not bad_censor.empty:
        raise SurvivalCsvError(f"{CENSOR_COLUMN} must be 0 or 1; invalid for slide(s): {list(bad_censor)}")

    out = df.copy()
    out[SURVIVAL_COLUMN] = survival.astype(int)
    out[CENSOR_COLUMN] = censor.astype(int)
    return out


def prediction_slide_ids(directory: Path) -> set[str]:
    """Slide IDs for which `directory` holds a `prediction-<slideID>` file."""
    if not directory.is_dir():
        return set()
    return {
        p.name[len(PREDICTION_PREFIX):]
        for p in directory.iterdir()
        if p.is_file() and p.name.startswith(PREDICTION_PREFIX)
    }


def unmatched_slide_ids(table: pd.DataFrame, directory: Path) -> list[str]:
    found = prediction_slide_ids(directory)
    return sorted(s for s in table[SLIDE_ID_COLUMN] if s not in found)


def read_alignment_output(path: Path) -> pd.DataFrame:
    """Load the alignment `output.csv` written by the TIL-align container."""
    return pd.read_csv(path, dtype={SLIDE_ID_COLUMN: str})


def _schema_hint() -> str:
    return "Expected a CSV like:\n" + SAMPLE_CSV
