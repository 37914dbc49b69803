"""
Connector Authenticator

Turns a connector's stored credentials into the headers an outbound request
needs. Fails closed: any missing credential raises AuthenticationError and the
caller must not send the request.

    none    -> {}
    basic   -> Authorization: Basic base64(username:password)
    apiKey  -> <keyName>: <apiKey> (header location only, see apply_query_auth)
    oauth2  -> Authorization: Bearer <accessToken>

Custom connector headers are merged last and may override computed ones.
"""

import base64
import logging
from typing import Any, Dict, Optional

from flowpilot.exceptions import AuthenticationError, RefreshError
from flowpilot.models.connector import AuthType, Connector, OAuth2Type

logger = logging.getLogger(__name__)

DEFAULT_API_KEY_NAME = 'X-API-Key'


def _missing(auth_config: Dict[str, Any], *keys: str) -> list:
    return [key for key in keys if not auth_config.get(key)]


class ConnectorAuthenticator:
    """
    Builds authentication headers for connectors.

    Usage:
        authenticator = ConnectorAuthenticator(token_service)
        headers = authenticator.authenticate(connector)
    """

    def __init__(self, token_service=None):
        """
        Args:
            token_service: TokenRefreshService used for client_credentials token fetches
        """
        self.token_service = token_service

    def authenticate(self, connector: Connector) -> Dict[str, str]:
        """
        Build the headers for connector.

        Raises:
            AuthenticationError: When credentials are missing or the token fetch fails
        """
        auth_config = connector.auth_config or {}
        logger.debug(f"Authenticating connector {connector.id} ({connector.auth_type.value})")

        if connector.auth_type == AuthType.NONE:
            headers = {}
        elif connector.auth_type == AuthType.BASIC:
            headers = self._basic_headers(connector, auth_config)
        elif connector.auth_type == AuthType.API_KEY:
            headers = self._api_key_headers(connector, auth_config)
        elif connector.auth_type == AuthType.OAUTH2:
            headers = self._oauth2_headers(connector, auth_config)
        else:
            raise AuthenticationError(connector.name, f"unsupported auth type {connector.auth_type}")

        headers.update({str(k): str(v) for k, v in (connector.headers or {}).items()})
        return headers

    def _basic_headers(self, connector: Connector, auth_config: Dict[str, Any]) -> Dict[str, str]:
        missing = _missing(auth_config, 'username', 'password')
        if missing:
            raise AuthenticationError(connector.name, f"missing {', '.join(missing)} for basic auth")

        raw = f"{auth_config['username']}:{auth_config['password']}".encode('utf-8')
        return {'Authorization': f"Basic {base64.b64encode(raw).decode('ascii')}"}

    def _api_key_headers(self, connector: Connector, auth_config: Dict[str, Any]) -> Dict[str, str]:
        if not auth_config.get('apiKey'):
            raise AuthenticationError(connector.name, "missing apiKey")

        if (auth_config.get('keyLocation') or 'header') != 'header':
            # Query-string keys are applied by apply_query_auth
            return {}

        key_name = auth_config.get('keyName') or DEFAULT_API_KEY_NAME
        return {key_name: str(auth_config['apiKey'])}

    def _oauth2_headers(self, connector: Connector, auth_config: Dict[str, Any]) -> Dict[str, str]:
        if connector.oauth2_type == OAuth2Type.CLIENT_CREDENTIALS:
            missing = _missing(auth_config, 'clientId', 'clientSecret', 'tokenUrl')
            if missing:
                raise AuthenticationError(
                    connector.name, f"missing {', '.join(missing)} for client_credentials"
                )
            if self.token_service is None:
                raise AuthenticationError(connector.name, "no token service available for client_credentials")
            try:
                access_token = self.token_service.fetch_client_credentials_token(connector)
            except RefreshError as e:
                raise AuthenticationError(connector.name, f"token request failed: {e.reason}")
            return {'Authorization': f"Bearer {access_token}"}

        # authorization_code: the interactive exchange must already have happened
        if auth_config.get('needsReauth'):
            raise AuthenticationError(
                connector.name,
                "authorization required: connector must be re-authorized",
                code=AuthenticationError.AUTHORIZATION_REQUIRED,
            )
        access_token = auth_config.get('accessToken')
        if not access_token:
            raise AuthenticationError(
                connector.name,
                "authorization required: no access token, complete the OAuth login first",
                code=AuthenticationError.AUTHORIZATION_REQUIRED,
            )
        return {'Authorization': f"Bearer {access_token}"}

    @staticmethod
    def apply_query_auth(connector: Connector, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """
        Add an apiKey that lives in the query string to params.

        Returns a new dict; params is not modified.
        """
        merged = dict(params or {})
        auth_config = connector.auth_config or {}
        if connector.auth_type == AuthType.API_KEY and auth_config.get('keyLocation') == 'query':
            if not auth_config.get('apiKey'):
                raise AuthenticationError(connector.name, "missing apiKey")
            merged[auth_config.get('keyName') or 'api_key'] = auth_config['apiKey']
        return merged
