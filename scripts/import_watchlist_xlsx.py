from __future__ import annotations

import csv
import os
from pathlib import Path
from typing import Any

from openpyxl import load_workbook

HEADER_ALIASES = {
    "ticker": "ticker",
    "symbol": "ticker",
    "cik": "cik",
    "sec cik": "cik",
    "dependency": "dependency",
    "portfolio weight": "dependency",
    "weight": "dependency",
}
REQUIRED_KEYS = {"ticker", "cik", "dependency"}
DEFAULT_DEPENDENCY = 0.6

WATCHLIST_FIELDS = [
    "ticker",
    "cik",
    "dependency",
    "last_filing_accession",
    "poll_interval_hours",
    "last_poll_at",
    "next_check_in_at",
]


def _normalize_header(value: Any) -> str:
    text = "" if value is None else str(value)
    collapsed = " ".join(text.split())
    return collapsed.strip().lower()


def _to_str(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, int):
        return str(value)
    if isinstance(value, float):
        if value.is_integer():
            return str(int(value))
        return str(value)
    return str(value).strip()


def _normalize_cik(value: Any) -> str:
    digits = "".join(ch for ch in _to_str(value) if ch.isdigit())
    return digits.zfill(10) if digits else ""


def _parse_dependency(value: Any) -> tuple[float, bool]:
    """Dependency in [0, 1]; percentages such as 35 or "35%" are scaled."""
    if value is None or value == "":
        return DEFAULT_DEPENDENCY, True
    if isinstance(value, (int, float)):
        amount = float(value)
    else:
        text = str(value).strip().rstrip("%").replace(",", ".")
        try:
            amount = float(text)
        except ValueError:
            return DEFAULT_DEPENDENCY, True
    if amount > 1:
        amount = amount / 100
    return max(0.0, min(1.0, amount)), False


def _resolve_input_path() -> Path:
    override = os.getenv("WATCHLIST_XLSX_PATH")
    if override:
        return Path(override)
    default_root = Path("watchlist.xlsx")
    if default_root.exists():
        return default_root
    return Path("data_private") / "watchlist.xlsx"


def _find_header_row(sheet, max_rows: int = 50) -> tuple[int, dict[str, int]]:
    best_row_idx = 1
    best_map: dict[str, int] = {}

    for idx, row in enumerate(
        sheet.iter_rows(min_row=1, max_row=max_rows, values_only=True),
        start=1,
    ):
        current: dict[str, int] = {}
        for col_idx, cell in enumerate(row):
            key = HEADER_ALIASES.get(_normalize_header(cell))
            if key and key not in current:
                current[key] = col_idx
        if len(current) > len(best_map):
            best_row_idx = idx
            best_map = current
        if REQUIRED_KEYS <= current.keys():
            return idx, current

    return best_row_idx, best_map


def import_watchlist_xlsx(
    input_path: Path,
    output_path: Path,
    report_path: Path,
    sheet_name: str | None = None,
) -> dict[str, int]:
    if not input_path.exists():
        raise FileNotFoundError(f"Input file not found: {input_path}")
    workbook = load_workbook(filename=input_path, read_only=True, data_only=True)
    sheet = workbook[sheet_name] if sheet_name else workbook.worksheets[0]

    header_row_idx, columns = _find_header_row(sheet)
    missing = REQUIRED_KEYS - columns.keys()
    if missing:
        missing_labels = ", ".join(sorted(missing))
        raise ValueError(
            f"Missing required headers: {missing_labels} (sheet: {sheet.title})"
        )

    rows_in = 0
    rows_written = 0
    missing_cik = 0
    default_dependency = 0
    seen: set[str] = set()
    dropped: list[dict[str, str]] = []

    output_path.parent.mkdir(parents=True, exist_ok=True)
    report_path.parent.mkdir(parents=True, exist_ok=True)

    with output_path.open("w", newline="", encoding="utf-8") as out_handle:
        writer = csv.DictWriter(out_handle, fieldnames=WATCHLIST_FIELDS)
        writer.writeheader()

        for row in sheet.iter_rows(min_row=header_row_idx + 1, values_only=True):
            if row is None:
                continue
            if not any(cell is not None and str(cell).strip() for cell in row):
                continue
            rows_in += 1

            ticker = _to_str(row[columns["ticker"]]).upper()
            if not ticker:
                dropped.append({"ticker": "", "reason": "missing_ticker"})
                continue
            if ticker in seen:
                dropped.append({"ticker": ticker, "reason": "duplicate_ticker"})
                continue
            seen.add(ticker)

            cik = _normalize_cik(row[columns["cik"]])
            if not cik:
                missing_cik += 1

            dependency, defaulted = _parse_dependency(row[columns["dependency"]])
            if defaulted:
                default_dependency += 1

            writer.writerow(
                {
                    "ticker": ticker,
                    "cik": cik,
                    "dependency": f"{dependency:g}",
                    "last_filing_accession": "",
                    "poll_interval_hours": "24",
                    "last_poll_at": "",
                    "next_check_in_at": "",
                }
            )
            rows_written += 1

    with report_path.open("w", newline="", encoding="utf-8") as report_handle:
        writer = csv.DictWriter(report_handle, fieldnames=["ticker", "reason"])
        writer.writeheader()
        for row in dropped:
            writer.writerow(row)

    return {
        "rows_in": rows_in,
        "rows_written": rows_written,
        "missing_cik": missing_cik,
        "default_dependency": default_dependency,
    }


def main() -> None:
    summary = import_watchlist_xlsx(
        input_path=_resolve_input_path(),
        output_path=Path("data") / "watchlist.csv",
        report_path=Path("data_private") / "import_watchlist_report.csv",
        sheet_name=os.getenv("WATCHLIST_SHEET_NAME"),
    )

    print(
        "rows_in={rows_in} rows_written={rows_written} "
        "missing_cik={missing_cik} default_dependency={default_dependency}".format(
            **summary
        )
    )


if __name__ == "__main__":
    main()
