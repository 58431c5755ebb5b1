"""SEC EDGAR submissions feed."""
from __future__ import annotations

import logging

import requests

from portfolio_watchman.errors import SourceFetchError
from portfolio_watchman.models.schemas import FilingRecord

logger = logging.getLogger(__name__)

SUBMISSIONS_URL = "https://data.sec.gov/submissions/CIK{cik}.json"
ARCHIVE_URL = "https://www.sec.gov/Archives/edgar/data/{cik}/{accession}/"
DEFAULT_USER_AGENT = "PortfolioWatchman/1.0 contact@example.com"
FIRST_RUN_LIMIT = 5


def fetch_submissions(
    cik: str,
    user_agent: str = DEFAULT_USER_AGENT,
    timeout: int = 20,
) -> list[FilingRecord]:
    """Return the company's recent filings, newest first."""
    url = SUBMISSIONS_URL.format(cik=cik.strip().zfill(10))
    headers = {"User-Agent": user_agent, "Accept": "application/json"}
    try:
        response = requests.get(url, headers=headers, timeout=timeout)
    except requests.RequestException as exc:
        raise SourceFetchError("edgar", f"EDGAR fetch failed for CIK {cik}: {exc}") from exc

    if not 200 <= response.status_code < 300:
        raise SourceFetchError(
            "edgar",
            f"EDGAR fetch failed for CIK {cik}: {response.status_code}",
            status_code=response.status_code,
        )

    payload = response.json()
    if not isinstance(payload, dict):
        raise SourceFetchError("edgar", f"EDGAR payload malformed for CIK {cik}")
    filings = payload.get("filings") or {}
    if not isinstance(filings, dict):
        raise SourceFetchError("edgar", f"EDGAR payload malformed for CIK {cik}")
    recent = filings.get("recent")
    if not recent:
        return []
    return parse_recent_filings(recent)


def parse_recent_filings(recent: dict) -> list[FilingRecord]:
    """Zip the column-oriented ``recent`` block into filing records.

    Raises SourceFetchError when the block is not the documented shape.
    """
    if not isinstance(recent, dict):
        raise SourceFetchError("edgar", "EDGAR recent filings block is not an object")
    accessions = recent.get("accessionNumber") or []
    forms = recent.get("form") or []
    dates = recent.get("filingDate") or []
    documents = recent.get("primaryDocument") or []
    for column in (accessions, forms, dates, documents):
        if not isinstance(column, list):
            raise SourceFetchError("edgar", "EDGAR recent filings column is not a list")

    filings: list[FilingRecord] = []
    for idx, accession in enumerate(accessions):
        if not isinstance(accession, str) or not accession:
            raise SourceFetchError("edgar", f"EDGAR accession number malformed at row {idx}")
        form = forms[idx] if idx < len(forms) else ""
        if not isinstance(form, str):
            form = ""
        filings.append(
            FilingRecord(
                form=form,
                filing_date=dates[idx] if idx < len(dates) else "",
                accession_number=accession,
                primary_document=(documents[idx] if idx < len(documents) else "") or None,
                is_amendment="/A" in form,
            )
        )
    return filings


def detect_new_filings(
    filings: list[FilingRecord],
    last_accession: str | None,
) -> list[FilingRecord]:
    """Filings newer than the stored cursor; the first run takes a few."""
    if not last_accession:
        return filings[:FIRST_RUN_LIMIT]

    new_filings: list[FilingRecord] = []
    for filing in filings:
        if filing.accession_number == last_accession:
            break
        new_filings.append(filing)
    return new_filings


def build_filing_url(cik: str, accession: str, primary_document: str | None) -> str:
    folder = ARCHIVE_URL.format(
        cik=str(int(cik)),
        accession=accession.replace("-", ""),
    )
    if primary_document:
        return f"{folder}{primary_document}"
    return folder
