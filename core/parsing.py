"""
Statement file reading.
Turns spreadsheet and text statements into line-oriented content, header first.
"""
from pathlib import Path
from typing import Any, List

import pandas as pd

from core.batching import count_data_rows
from core.exceptions import DataNotFoundError, ParsingError
from core.logger import setup_logger

logger = setup_logger(__name__)

EXCEL_SUFFIXES = {".xlsx", ".xls"}
TEXT_SUFFIXES = {".csv", ".txt", ".tsv"}


def detect_file_type(file_name: str) -> str:
    """
    File type label passed to the extraction service.

    Returns:
        "xlsx", "xls", "csv" or "txt"

    Raises:
        ParsingError: If the extension is not supported
    """
    suffix = Path(file_name).suffix.lower()
    if suffix in EXCEL_SUFFIXES or suffix in TEXT_SUFFIXES:
        return "txt" if suffix == ".tsv" else suffix.lstrip(".")
    raise ParsingError(
        f"Unsupported file type: {suffix or 'none'}",
        details={"file_name": file_name, "supported": sorted(EXCEL_SUFFIXES | TEXT_SUFFIXES)},
    )


def _cell_text(value: Any) -> str:
    if pd.isna(value):
        return ""
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value).strip()


def dataframe_to_lines(df: pd.DataFrame) -> List[str]:
    """Render a header-less sheet as tab-separated lines, skipping empty rows."""
    df = df.dropna(how="all")
    lines = []
    for row in df.itertuples(index=False):
        line = "\t".join(_cell_text(v) for v in row).rstrip("\t")
        if line.strip():
            lines.append(line)
    return lines


def read_statement_content(file_path: str) -> str:
    """
    Read a statement file into line-oriented text.

    Spreadsheets are rendered tab-separated, one row per line, every sheet
    in workbook order. Text files are read as UTF-8. Blank lines are dropped.

    Args:
        file_path: Path to the statement

    Returns:
        Content with the header line first

    Raises:
        DataNotFoundError: If the file doesn't exist
        ParsingError: If the file cannot be read or has no data rows
    """
    path = Path(file_path)
    if not path.exists():
        raise DataNotFoundError(
            f"File not found: {file_path}",
            details={"file_path": file_path}
        )

    file_type = detect_file_type(path.name)
    logger.info(f"Reading {file_type} statement {path.name}")

    try:
        if file_type in ("xlsx", "xls"):
            engine = "xlrd" if file_type == "xls" else "openpyxl"
            sheets = pd.read_excel(file_path, sheet_name=None, header=None, engine=engine, dtype=object)
            lines = []
            for name, df in sheets.items():
                sheet_lines = dataframe_to_lines(df)
                logger.debug(f"Sheet '{name}': {len(sheet_lines)} lines")
                lines.extend(sheet_lines)
        else:
            text = path.read_text(encoding="utf-8-sig")
            lines = [line.rstrip() for line in text.splitlines() if line.strip()]
    except Exception as e:
        logger.error(f"Failed to read {file_path}: {str(e)}")
        raise ParsingError(
            f"Could not read statement file {path.name}",
            details={"file_path": file_path, "error": str(e)}
        )

    content = "\n".join(lines)
    if count_data_rows(content) == 0:
        raise ParsingError(
            "File contains no data rows",
            details={"file_path": file_path}
        )

    logger.info(f"Read {count_data_rows(content)} data rows from {path.name}")
    return content
