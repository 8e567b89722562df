import json
import logging
from typing import Iterator, Optional

import requests

from shared.errors import (
    AuthenticationError,
    AuthorizationError,
    ConflictError,
    MixError,
    NotFoundError,
    StorageError,
    ValidationError,
)
from shared.events import Event

logger = logging.getLogger(__name__)

ERRORS_BY_STATUS = {
    400: ValidationError,
    401: AuthenticationError,
    403: AuthorizationError,
    404: NotFoundError,
    409: ConflictError,
    503: StorageError,
}


class LobbyClient:
    """
    HTTP client for one player session.

    Clients only send intents and re-read state; they never write the mix
    record themselves. Every call carries a timeout so a stalled service
    surfaces as StorageError instead of hanging the caller.
    """

    def __init__(self, base_url: str, player_id: str = None, timeout: float = 5, session: requests.Session = None):
        self.base_url = base_url.rstrip('/')
        self.player_id = player_id
        self.timeout = timeout
        self.session = session or requests.Session()

    def _headers(self) -> dict:
        headers = {'Accept': 'application/json'}
        if self.player_id:
            headers['X-Player-Id'] = self.player_id
        return headers

    def _request(self, method: str, path: str, payload: dict = None) -> dict:
        url = f"{self.base_url}{path}"
        try:
            resp = self.session.request(
                method,
                url,
                json=payload,
                headers=self._headers(),
                timeout=self.timeout
            )
        except requests.exceptions.RequestException as e:
            raise StorageError(f"Mix service unavailable: {e}")

        try:
            body = resp.json()
        except ValueError:
            body = {}

        if resp.status_code >= 400:
            error_cls = ERRORS_BY_STATUS.get(resp.status_code, MixError)
            raise error_cls(body.get("message", resp.reason or "Request failed"), body.get("details"))
        return body

    # --- Intents ---

    def create_mix(self) -> dict:
        return self._request('POST', '/api/v1/mixes')

    def join(self, mix_id: str) -> dict:
        return self._request('POST', f'/api/v1/mixes/{mix_id}/join')

    def balance(self, mix_id: str) -> dict:
        return self._request('POST', f'/api/v1/mixes/{mix_id}/balance')

    def ban(self, mix_id: str, map_id: str, expected_count: int = None) -> dict:
        payload = {'map_id': map_id}
        if expected_count is not None:
            payload['expected_count'] = expected_count
        return self._request('POST', f'/api/v1/mixes/{mix_id}/bans', payload)

    def set_server_ip(self, mix_id: str, server_ip: str) -> dict:
        return self._request('PUT', f'/api/v1/mixes/{mix_id}/server', {'server_ip': server_ip})

    def finalize(self, mix_id: str, winner: str) -> dict:
        return self._request('POST', f'/api/v1/mixes/{mix_id}/finalize', {'winner': winner})

    def record_stats(self, mix_id: str, score_a: int, score_b: int, players: list) -> dict:
        """Submit the final score and one stat line per player of a finished mix."""
        payload = {'score_a': score_a, 'score_b': score_b, 'players': players}
        return self._request('POST', f'/api/v1/mixes/{mix_id}/stats', payload)

    # --- Reads ---

    def get_mix(self, mix_id: str) -> dict:
        return self._request('GET', f'/api/v1/mixes/{mix_id}')

    def get_veto(self, mix_id: str) -> dict:
        return self._request('GET', f'/api/v1/mixes/{mix_id}/veto')

    def get_stats(self, mix_id: str) -> dict:
        return self._request('GET', f'/api/v1/mixes/{mix_id}/stats')

    def watch(self, mix_id: str, keepalive: float = 30) -> Iterator[Optional[Event]]:
        """
        Yield change events for a mix from the SSE stream.

        Heartbeats yield ``None``. The read timeout is a little longer than
        the server keepalive, so a silent connection raises StorageError.
        """
        url = f"{self.base_url}/api/v1/mixes/{mix_id}/events"
        try:
            resp = self.session.get(
                url,
                headers=self._headers(),
                stream=True,
                timeout=(self.timeout, keepalive + self.timeout)
            )
            resp.raise_for_status()
            for line in resp.iter_lines(decode_unicode=True):
                if not line:
                    continue
                if line.startswith(':'):
                    yield None
                elif line.startswith('data: '):
                    try:
                        yield Event.from_dict(json.loads(line[len('data: '):]))
                    except (ValueError, KeyError) as e:
                        logger.warning(f"Skipping malformed event on mix {mix_id}: {e}")
        except requests.exceptions.RequestException as e:
            raise StorageError(f"Change stream for mix {mix_id} interrupted: {e}")
