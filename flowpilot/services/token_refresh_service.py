"""
Token Refresh Service - keeps OAuth2 connector tokens alive.

A background thread scans every stored OAuth2 connector on a fixed interval
and refreshes tokens that expire within the refresh buffer. The executor
calls refresh_specific_connector() right before an HTTP call so a run never
uses a token already known to be stale.

Refreshes are serialized per connector. Inside the connector's lock the
stored credentials are read again and the expiry re-checked, so when two
callers race the second one sees the token the first one just stored and
does not hit the token endpoint again.

State per connector:

    valid -> needsRefresh -> refreshing -> valid
                                        -> needsReauth
"""

import logging
import threading
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Set

import httpx

from flowpilot.exceptions import RefreshError
from flowpilot.models.connector import AuthType, Connector, format_timestamp
from flowpilot.models.execution import utcnow

logger = logging.getLogger(__name__)

DEFAULT_CHECK_INTERVAL = 5 * 60
DEFAULT_REFRESH_BUFFER = 10 * 60
DEFAULT_TIMEOUT = 30

TOKEN_STATUS_MESSAGES = {
    'valid': "Token is valid",
    'expiring_soon': "Token expires soon and will be refreshed",
    'expired': "Token has expired",
    'no_token': "Connector is not authenticated",
    'not_applicable': "Connector does not use OAuth2",
}


class TokenState(str, Enum):
    VALID = 'valid'
    NEEDS_REFRESH = 'needsRefresh'
    REFRESHING = 'refreshing'
    NEEDS_REAUTH = 'needsReauth'


class TokenRefreshService:
    """
    Usage:
        service = TokenRefreshService(storage)
        service.start()
        ...
        service.refresh_specific_connector(owner_id, connector_id)
        ...
        service.stop()
    """

    def __init__(
        self,
        storage,
        interval: float = DEFAULT_CHECK_INTERVAL,
        buffer: float = DEFAULT_REFRESH_BUFFER,
        transport: Optional[httpx.BaseTransport] = None,
        timeout: float = DEFAULT_TIMEOUT,
    ):
        """
        Args:
            storage: Storage collaborator holding the connectors
            interval: Seconds between background scans
            buffer: Refresh tokens expiring within this many seconds
            transport: Optional httpx transport (tests use httpx.MockTransport)
            timeout: Timeout in seconds for token endpoint calls
        """
        self.storage = storage
        self.interval = interval
        self.buffer = timedelta(seconds=buffer)
        self.transport = transport
        self.timeout = timeout

        self._locks: Dict[str, threading.Lock] = {}
        self._locks_mutex = threading.Lock()
        self._refreshing: Set[str] = set()

        self._stop_event = threading.Event()
        self._thread: Optional[threading.Thread] = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self):
        """Start the background scan. Runs one scan immediately, then every interval."""
        if self.is_running:
            logger.debug("Token refresh service already running")
            return

        self._stop_event.clear()
        self._thread = threading.Thread(
            target=self._run,
            name='token-refresh',
            daemon=True,
        )
        self._thread.start()
        logger.info(f"Token refresh service started (interval={self.interval}s, buffer={self.buffer})")

    def stop(self, timeout: Optional[float] = None):
        """Signal the background scan to stop and wait for it."""
        self._stop_event.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
        logger.info("Token refresh service stopped")

    @property
    def is_running(self) -> bool:
        return self._thread is not None and self._thread.is_alive()

    def _run(self):
        while not self._stop_event.is_set():
            try:
                self.refresh_expired_tokens()
            except Exception as e:
                # A failing scan must not kill the thread
                logger.error(f"Token refresh scan failed: {e}")
            self._stop_event.wait(self.interval)

    # ------------------------------------------------------------------
    # Scan
    # ------------------------------------------------------------------

    def refresh_expired_tokens(self) -> Dict[str, int]:
        """
        Refresh every OAuth2 connector whose token is within the buffer.

        Failures are recorded on the connector and logged; they never stop the
        scan.

        Returns:
            Counts of checked, refreshed and failed connectors
        """
        summary = {'checked': 0, 'refreshed': 0, 'failed': 0}

        for connector in self.storage.list_connectors():
            if connector.auth_type != AuthType.OAUTH2:
                continue
            summary['checked'] += 1

            if not self.needs_refresh(connector):
                continue

            try:
                if self.refresh_specific_connector(connector.owner_id, connector.id):
                    summary['refreshed'] += 1
                else:
                    summary['failed'] += 1
            except Exception as e:
                summary['failed'] += 1
                logger.error(f"Unexpected error refreshing connector {connector.id}: {e}")

        if summary['checked']:
            logger.info(
                f"Token scan: {summary['checked']} checked, "
                f"{summary['refreshed']} refreshed, {summary['failed']} failed"
            )
        return summary

    def needs_refresh(self, connector: Connector, now: Optional[datetime] = None) -> bool:
        """True when connector has a refreshable token that expires within the buffer."""
        if connector.auth_type != AuthType.OAUTH2:
            return False

        auth_config = connector.auth_config or {}
        if not auth_config.get('accessToken') or not auth_config.get('refreshToken'):
            return False

        expires_at = connector.token_expires_at
        if expires_at is None:
            return False

        now = now or utcnow()
        return expires_at - now <= self.buffer

    # ------------------------------------------------------------------
    # On-demand refresh
    # ------------------------------------------------------------------

    def _get_lock(self, connector_id: str) -> threading.Lock:
        with self._locks_mutex:
            if connector_id not in self._locks:
                self._locks[connector_id] = threading.Lock()
            return self._locks[connector_id]

    def refresh_specific_connector(self, owner_id: Optional[str], connector_id: str, force: bool = False) -> bool:
        """
        Refresh one connector's token if it is within the buffer (or always, with force).

        Returns:
            True when the connector holds a usable token afterwards, False when
            the refresh failed and the connector was flagged needsReauth.
        """
        with self._get_lock(connector_id):
            # Re-read under the lock: a concurrent caller may have just refreshed
            connector = self.storage.get_connector(owner_id, connector_id)
            if connector is None:
                logger.warning(f"Connector not found for refresh: {connector_id}")
                return False

            if connector.auth_type != AuthType.OAUTH2:
                return True

            if not force and not self.needs_refresh(connector):
                logger.debug(f"Token for connector {connector_id} is fresh, skipping refresh")
                return True

            with self._locks_mutex:
                self._refreshing.add(connector_id)
            try:
                return self._refresh(connector)
            finally:
                with self._locks_mutex:
                    self._refreshing.discard(connector_id)

    def _refresh(self, connector: Connector) -> bool:
        auth_config = dict(connector.auth_config or {})
        now = utcnow()

        try:
            if not auth_config.get('refreshToken'):
                raise RefreshError(connector.id, "no refresh token stored")
            payload = self._request_refresh(connector.id, auth_config)
        except RefreshError as e:
            logger.warning(str(e))
            auth_config['needsReauth'] = True
            auth_config['lastRefreshError'] = format_timestamp(now)
            auth_config['lastRefreshErrorMessage'] = e.reason
            self.storage.update_connector_auth(connector.owner_id, connector.id, auth_config)
            return False

        updated = self._apply_token_response(auth_config, payload, now)
        updated['lastRefreshed'] = format_timestamp(now)
        updated['needsReauth'] = False
        updated.pop('lastRefreshErrorMessage', None)
        self.storage.update_connector_auth(connector.owner_id, connector.id, updated)

        logger.info(f"Refreshed token for connector {connector.id} (expires {updated.get('tokenExpiresAt')})")
        return True

    def _request_refresh(self, connector_id: str, auth_config: Dict[str, Any]) -> Dict[str, Any]:
        data = {
            'grant_type': 'refresh_token',
            'refresh_token': auth_config['refreshToken'],
        }
        if auth_config.get('clientId'):
            data['client_id'] = auth_config['clientId']

        auth = None
        if auth_config.get('clientId') and auth_config.get('clientSecret'):
            auth = (auth_config['clientId'], auth_config['clientSecret'])

        return self._post_token_request(connector_id, auth_config.get('tokenUrl'), data, auth)

    def _post_token_request(self, connector_id: str, token_url: Optional[str], data: Dict[str, Any], auth) -> Dict[str, Any]:
        """
        POST a form-encoded token request.

        Raises:
            RefreshError: On network errors, non-2xx responses or a missing access_token
        """
        if not token_url:
            raise RefreshError(connector_id, "no tokenUrl configured")

        try:
            with httpx.Client(transport=self.transport, timeout=self.timeout) as client:
                response = client.post(
                    token_url,
                    data=data,
                    auth=auth,
                    headers={'Accept': 'application/json'},
                )
        except httpx.HTTPError as e:
            raise RefreshError(connector_id, f"token request failed: {e}")

        if not response.is_success:
            raise RefreshError(connector_id, f"token endpoint returned HTTP {response.status_code}")

        try:
            payload = response.json()
        except ValueError:
            raise RefreshError(connector_id, "token endpoint returned invalid JSON")

        if not isinstance(payload, dict) or not payload.get('access_token'):
            raise RefreshError(connector_id, "token response has no access_token")

        return payload

    @staticmethod
    def _apply_token_response(auth_config: Dict[str, Any], payload: Dict[str, Any], now: datetime) -> Dict[str, Any]:
        updated = dict(auth_config)
        updated['accessToken'] = payload['access_token']
        if payload.get('refresh_token'):
            # Providers may rotate refresh tokens
            updated['refreshToken'] = payload['refresh_token']

        expires_in = payload.get('expires_in')
        try:
            expires_in = int(expires_in) if expires_in is not None else None
        except (TypeError, ValueError):
            expires_in = None
        updated['tokenExpiresAt'] = (
            format_timestamp(now + timedelta(seconds=expires_in)) if expires_in is not None else None
        )

        if payload.get('scope'):
            updated['scope'] = payload['scope']
        return updated

    # ------------------------------------------------------------------
    # client_credentials
    # ------------------------------------------------------------------

    def fetch_client_credentials_token(self, connector: Connector) -> str:
        """
        Return a client_credentials access token for connector.

        A cached token is reused until it falls inside the refresh buffer;
        otherwise a new one is requested and stored on the connector.

        Raises:
            RefreshError: When the token endpoint rejects the request
        """
        with self._get_lock(connector.id):
            # Connectors passed inline (node tests) may not be stored
            stored = self.storage.get_connector(connector.owner_id, connector.id)
            current = stored or connector
            auth_config = dict(current.auth_config or {})

            expires_at = current.token_expires_at
            if auth_config.get('accessToken') and expires_at and expires_at - utcnow() > self.buffer:
                return auth_config['accessToken']

            data = {'grant_type': 'client_credentials'}
            if auth_config.get('scope'):
                data['scope'] = auth_config['scope']

            now = utcnow()
            payload = self._post_token_request(
                connector.id,
                auth_config.get('tokenUrl'),
                data,
                (auth_config.get('clientId'), auth_config.get('clientSecret')),
            )

            updated = self._apply_token_response(auth_config, payload, now)
            updated['lastRefreshed'] = format_timestamp(now)
            updated['needsReauth'] = False
            if stored is not None:
                self.storage.update_connector_auth(current.owner_id, current.id, updated)

            logger.info(f"Fetched client_credentials token for connector {connector.id}")
            return updated['accessToken']

    # ------------------------------------------------------------------
    # Reporting
    # ------------------------------------------------------------------

    def get_token_state(self, connector: Connector) -> Optional[TokenState]:
        """Lifecycle state of an OAuth2 connector (None for other auth types)."""
        if connector.auth_type != AuthType.OAUTH2:
            return None

        with self._locks_mutex:
            if connector.id in self._refreshing:
                return TokenState.REFRESHING

        if (connector.auth_config or {}).get('needsReauth'):
            return TokenState.NEEDS_REAUTH
        if self.needs_refresh(connector):
            return TokenState.NEEDS_REFRESH
        return TokenState.VALID

    def get_token_status(self, connector: Connector, now: Optional[datetime] = None) -> Dict[str, Any]:
        """
        Token report for the UI.

        status is one of valid, expiring_soon, expired, no_token, not_applicable.
        """
        report: Dict[str, Any] = {'connectorId': connector.id, 'authType': connector.auth_type.value}
        if connector.auth_type != AuthType.OAUTH2:
            return self._with_status(report, 'not_applicable')

        auth_config = connector.auth_config or {}
        report.update({
            'state': self.get_token_state(connector).value,
            'hasRefreshToken': bool(auth_config.get('refreshToken')),
            'needsReauth': bool(auth_config.get('needsReauth')),
            'lastRefreshed': auth_config.get('lastRefreshed'),
            'lastRefreshError': auth_config.get('lastRefreshError'),
            'expiresAt': auth_config.get('tokenExpiresAt'),
            'expiresIn': None,
        })

        if not auth_config.get('accessToken'):
            return self._with_status(report, 'no_token')

        expires_at = connector.token_expires_at
        if expires_at is None:
            return self._with_status(report, 'valid')

        remaining = (expires_at - (now or utcnow())).total_seconds()
        report['expiresIn'] = int(remaining)
        if remaining <= 0:
            status = 'expired'
        elif remaining <= self.buffer.total_seconds():
            status = 'expiring_soon'
        else:
            status = 'valid'
        return self._with_status(report, status)

    @staticmethod
    def _with_status(report: Dict[str, Any], status: str) -> Dict[str, Any]:
        report['status'] = status
        report['message'] = TOKEN_STATUS_MESSAGES[status]
        if report.get('needsReauth'):
            report['message'] += "; re-authorization required"
        return report
