"""Tabular input loading for census, survey and results files."""

from pathlib import Path

import polars as pl

SUPPORTED_SUFFIXES = (".csv", ".parquet", ".sav", ".dta")


def normalize_columns(df: pl.DataFrame, aliases: dict[str, str]) -> pl.DataFrame:
    """Lower-case column names and rename known aliases to canonical names.

    An alias is skipped when the canonical column already exists, so a file
    carrying both ``pcon`` and ``constituency_code`` keeps the latter.
    """
    df = df.rename({c: c.strip().lower() for c in df.columns})
    renames = {
        src: dst
        for src, dst in aliases.items()
        if src in df.columns and dst not in df.columns
    }
    return df.rename(renames) if renames else df


def require_columns(df: pl.DataFrame, columns: list[str], source: str) -> None:
    """Raise ValueError if any of *columns* is missing from *df*."""
    missing = [c for c in columns if c not in df.columns]
    if missing:
        msg = f"{source} is missing required columns {missing} (found {df.columns})"
        raise ValueError(msg)


def read_table(
    path: Path,
    aliases: dict[str, str] | None = None,
    required: list[str] | None = None,
) -> pl.DataFrame:
    """Read a CSV, Parquet, SPSS or Stata file into a polars DataFrame.

    SPSS and Stata files are read through pandas with value labels left as
    their numeric codes, since every recode table works on codes.
    """
    path = Path(path)
    if not path.exists():
        msg = f"Input file not found: {path}"
        raise FileNotFoundError(msg)

    suffix = path.suffix.lower()
    match suffix:
        case ".csv":
            df = pl.read_csv(path, infer_schema_length=10_000)
        case ".parquet":
            df = pl.read_parquet(path)
        case ".sav":
            import pandas as pd

            df = pl.from_pandas(pd.read_spss(path, convert_categoricals=False))
        case ".dta":
            import pandas as pd

            df = pl.from_pandas(pd.read_stata(path, convert_categoricals=False))
        case _:
            msg = f"Unsupported input format {suffix!r} for {path} (expected {SUPPORTED_SUFFIXES})"
            raise ValueError(msg)

    df = normalize_columns(df, aliases or {})
    if required:
        require_columns(df, required, path.name)
    return df
