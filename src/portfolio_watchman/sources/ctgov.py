from __future__ import annotations

from typing import Any

import requests

from portfolio_watchman.errors import SourceFetchError

STUDY_URL = "https://clinicaltrials.gov/api/v2/studies/{nct_id}"
STUDY_PAGE_URL = "https://clinicaltrials.gov/study/{nct_id}"


def fetch_study(nct_id: str, timeout: int = 20) -> dict[str, Any] | None:
    """Fetch one registry record. Unknown trials return None."""
    url = STUDY_URL.format(nct_id=nct_id)
    try:
        response = requests.get(
            url, headers={"Accept": "application/json"}, timeout=timeout
        )
    except requests.RequestException as exc:
        raise SourceFetchError("ctgov", f"CT.gov fetch failed for {nct_id}: {exc}") from exc

    if response.status_code == 404:
        return None
    if not 200 <= response.status_code < 300:
        raise SourceFetchError(
            "ctgov",
            f"CT.gov fetch failed for {nct_id}: {response.status_code}",
            status_code=response.status_code,
        )
    study = response.json()
    if not isinstance(study, dict):
        raise SourceFetchError("ctgov", f"CT.gov payload malformed for {nct_id}")
    return study


def study_url(nct_id: str) -> str:
    return STUDY_PAGE_URL.format(nct_id=nct_id)
