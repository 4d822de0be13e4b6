import logging
from typing import Any, Optional

import requests

from roundmirror.models import RoundRecord
from roundmirror.services.rounds.errors import SnapshotFetchFailure
from roundmirror.services.rounds.modes import GameMode

log = logging.getLogger(__name__)


def _unwrap(mode: GameMode, body: Any) -> Any:
    # {"success": true, "data": {...}} envelopes
    if isinstance(body, dict) and 'success' in body and isinstance(body.get('data'), dict):
        body = body['data']
    # LDS snapshots nest the whole pushed state under "game"
    if mode.name == 'lds' and isinstance(body, dict) and isinstance(body.get('game'), dict) \
            and 'game' in body['game']:
        body = body['game']
    return body


class SnapshotClient:
    """Fetches the authoritative state of a topic over HTTP."""

    def __init__(self, base_url: str, timeout: float = 5, token: Optional[str] = None,
                 session: Optional[requests.Session] = None):
        self.base_url = base_url
        self.timeout = timeout
        self.session = session or requests.Session()
        if token:
            self.session.headers['Authorization'] = f"Bearer {token}"

    def fetch(self, mode: GameMode, key: Optional[str]) -> RoundRecord:
        url = mode.snapshot_url(self.base_url, key)
        try:
            resp = self.session.get(url, timeout=self.timeout)
            resp.raise_for_status()
            body = resp.json()
        except requests.RequestException as exc:
            raise SnapshotFetchFailure(f"GET {url} failed: {exc}") from exc
        except ValueError as exc:
            raise SnapshotFetchFailure(f"GET {url} returned invalid JSON") from exc

        body = _unwrap(mode, body)
        if not isinstance(body, dict):
            raise SnapshotFetchFailure(f"GET {url} returned no round")
        try:
            record = RoundRecord.from_payload(mode.normalize(body))
        except (ValueError, TypeError, AttributeError) as exc:
            raise SnapshotFetchFailure(f"GET {url}: {exc}") from exc
        if not mode.knows(record.phase):
            raise SnapshotFetchFailure(f"GET {url}: unknown phase '{record.phase}'")
        if record.result is not None and not mode.is_terminal(record.phase):
            record.extra['last_result'], record.result = record.result, None
        log.debug(f"[snapshot-fetched] url={url} round={record.round_id} phase={record.phase}")
        return record
