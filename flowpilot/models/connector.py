"""
Connector - reusable base URL plus authentication settings for an external API.

auth_config keeps the stored camelCase keys untouched because it is persisted
opaquely by the storage collaborator and rewritten by the token refresher:

    basic:   {username, password}
    apiKey:  {apiKey, keyName='X-API-Key', keyLocation='header'|'query'}
    oauth2:  {oauth2Type, clientId, clientSecret, tokenUrl, accessToken,
              refreshToken, tokenExpiresAt, needsReauth, lastRefreshed,
              lastRefreshError, scope}
"""

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


class AuthType(str, Enum):
    """Connector authentication types"""
    NONE = 'none'
    BASIC = 'basic'
    API_KEY = 'apiKey'
    OAUTH2 = 'oauth2'


class OAuth2Type(str, Enum):
    AUTHORIZATION_CODE = 'authorization_code'
    CLIENT_CREDENTIALS = 'client_credentials'


@dataclass
class Connector:
    id: str
    name: str
    base_url: str = ''
    auth_type: AuthType = AuthType.NONE
    auth_config: Dict[str, Any] = field(default_factory=dict)
    headers: Dict[str, str] = field(default_factory=dict)
    owner_id: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Connector':
        auth_config = data.get('authConfig')
        if auth_config is None:
            auth_config = data.get('auth') or {}

        raw_auth_type = data.get('authType') or 'none'
        try:
            auth_type = AuthType(raw_auth_type)
        except ValueError:
            raise ValueError(f"Unsupported connector auth type: {raw_auth_type}")

        headers = dict(auth_config.get('headers') or {})
        headers.update(data.get('headers') or {})

        return cls(
            id=str(data.get('id')),
            name=data.get('name') or str(data.get('id')),
            base_url=data.get('baseUrl') or '',
            auth_type=auth_type,
            auth_config=dict(auth_config),
            headers=headers,
            owner_id=data.get('ownerId'),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'name': self.name,
            'baseUrl': self.base_url,
            'authType': self.auth_type.value,
            'authConfig': dict(self.auth_config),
            'headers': dict(self.headers),
            'ownerId': self.owner_id,
        }

    @property
    def oauth2_type(self) -> OAuth2Type:
        raw = self.auth_config.get('oauth2Type') or OAuth2Type.AUTHORIZATION_CODE.value
        try:
            return OAuth2Type(raw)
        except ValueError:
            return OAuth2Type.AUTHORIZATION_CODE

    @property
    def token_expires_at(self) -> Optional[datetime]:
        return parse_timestamp(self.auth_config.get('tokenExpiresAt'))


def parse_timestamp(value: Any) -> Optional[datetime]:
    """
    Parse a stored timestamp (ISO-8601 string, epoch seconds/millis or datetime).

    Naive values are treated as UTC.
    """
    if value is None or value == '':
        return None

    if isinstance(value, datetime):
        parsed = value
    elif isinstance(value, (int, float)) and not isinstance(value, bool):
        # Millisecond epochs come from the JS editor
        seconds = value / 1000 if value > 1e11 else value
        parsed = datetime.fromtimestamp(seconds, tz=timezone.utc)
    elif isinstance(value, str):
        text = value.strip()
        if text.endswith('Z'):
            text = text[:-1] + '+00:00'
        try:
            parsed = datetime.fromisoformat(text)
        except ValueError:
            return None
    else:
        return None

    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_timestamp(value: datetime) -> str:
    return value.astimezone(timezone.utc).isoformat().replace('+00:00', 'Z')
