import json
import logging
from pathlib import Path

logger = logging.getLogger(__name__)


class StubMarketProvider:
    """Daily price moves read from a local JSON file.

    The file maps ``{date: {ticker: move}}`` where a move is a fraction,
    e.g. -0.15 for a 15% drop.
    """

    def __init__(self, path: Path):
        self.path = path
        self._data: dict[str, dict[str, float]] = {}
        if not path.exists():
            logger.info("No market data file at %s", path)
            return
        try:
            self._data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as exc:
            logger.warning("Could not read market data %s: %s", path, exc)

    def daily_move(self, ticker: str, date: str) -> float | None:
        day = self._data.get(date)
        if not day:
            return None
        move = day.get(ticker)
        return None if move is None else float(move)
