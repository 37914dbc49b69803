"""
Step Processor - Executes individual flow nodes

Handles:
- Resolving node config through the VariableResolver
- Authenticating HTTP nodes through their connector (fail closed)
- Issuing outbound HTTP calls and capturing the response
- setVariable, ifElse, log, delay and stopJob semantics

Loop nodes are driven by the executor, which re-enters the loop body.
"""

import asyncio
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx

from flowpilot.exceptions import AuthenticationError, FlowExecutionError, ScriptError, TransportError
from flowpilot.flow_engine.branching import BranchingHandler
from flowpilot.flow_engine.script_evaluator import evaluate_transform
from flowpilot.flow_engine.variable_resolver import UNDEFINED, VariableResolver
from flowpilot.models.connector import AuthType, Connector
from flowpilot.models.flow import (
    DelayConfig,
    DelayType,
    DelayUnit,
    HttpConfig,
    IfElseConfig,
    LogConfig,
    Node,
    NodeType,
    SetVariableConfig,
    StopJobConfig,
    StopType,
)
from flowpilot.services.connector_auth import ConnectorAuthenticator

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT = 30
DEFAULT_MAX_DELAY_SECONDS = 3600

_UNIT_SECONDS = {
    DelayUnit.MILLISECONDS: 0.001,
    DelayUnit.SECONDS: 1,
    DelayUnit.MINUTES: 60,
    DelayUnit.HOURS: 3600,
}

_BODYLESS_METHODS = ('GET', 'HEAD', 'OPTIONS')


@dataclass
class StepOutcome:
    """What a handler produced: the node result and, for stopJob, how the flow ends"""
    result: Any = None
    stop: Optional[StopType] = None
    message: Optional[str] = None


def _as_template(path: str) -> str:
    """Accept both "{{vars.x}}" and a bare "vars.x"."""
    return path if '{{' in path else f"{{{{{path.strip()}}}}}"


class StepProcessor:
    """
    Processes individual nodes of a flow.

    Responsibilities:
    - Resolve config values using VariableResolver
    - Authenticate outbound calls
    - Execute the node's semantics
    - Raise a FlowExecutionError subclass on failure (the executor records it)
    """

    def __init__(
        self,
        storage,
        authenticator: Optional[ConnectorAuthenticator] = None,
        token_service=None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        http_timeout: float = DEFAULT_HTTP_TIMEOUT,
        max_delay_seconds: float = DEFAULT_MAX_DELAY_SECONDS,
        sleep=asyncio.sleep,
    ):
        """
        Args:
            storage: Storage collaborator used to load connectors
            authenticator: Connector authenticator (defaults to one bound to token_service)
            token_service: TokenRefreshService for pre-call OAuth2 refreshes
            transport: Optional httpx transport (tests use httpx.MockTransport)
            http_timeout: Default per-call timeout in seconds
            max_delay_seconds: Upper bound for duration delays
            sleep: Coroutine used by delay nodes
        """
        self.storage = storage
        self.token_service = token_service
        self.authenticator = authenticator or ConnectorAuthenticator(token_service)
        self.transport = transport
        self.http_timeout = http_timeout
        self.max_delay_seconds = max_delay_seconds
        self.sleep = sleep

        self._handlers = {
            NodeType.HTTP: self.process_http,
            NodeType.SET_VARIABLE: self.process_set_variable,
            NodeType.IF_ELSE: self.process_if_else,
            NodeType.LOG: self.process_log,
            NodeType.DELAY: self.process_delay,
            NodeType.STOP_JOB: self.process_stop_job,
        }

    async def process(self, node: Node, resolver: VariableResolver, execution_logger, owner_id: Optional[str]) -> StepOutcome:
        handler = self._handlers.get(node.type)
        if handler is None:
            raise FlowExecutionError(f"No handler for node type: {node.type.value}")
        return await handler(node, resolver, execution_logger, owner_id)

    # ------------------------------------------------------------------
    # http
    # ------------------------------------------------------------------

    async def process_http(self, node: Node, resolver: VariableResolver, execution_logger, owner_id: Optional[str]) -> StepOutcome:
        config: HttpConfig = node.config

        connector = None
        auth_headers: Dict[str, str] = {}
        if config.connector:
            connector = await self.load_connector(owner_id, config.connector)
            auth_headers = await asyncio.to_thread(self.authenticator.authenticate, connector)
            execution_logger.debug(f"Authenticated with connector {connector.name}", node_id=node.id)

        url = self.build_url(resolver.resolve_text(config.endpoint, node.id), connector)

        params = {k: resolver.resolve_text(v, node.id) for k, v in config.query_params.items()}
        if connector is not None:
            params = self.authenticator.apply_query_auth(connector, params)

        headers = {str(k): resolver.resolve_text(v, node.id) for k, v in config.headers.items()}
        # Auth headers win over node headers
        headers.update(auth_headers)

        body = None
        if config.method not in _BODYLESS_METHODS and config.body not in (None, ''):
            body = resolver.resolve(config.body, node.id)

        execution_logger.info(f"{config.method} {url}", node_id=node.id)
        result = await self.send_request(
            config.method, url, params, headers, body,
            timeout=config.timeout or self.http_timeout,
            parse_json=config.parse_json,
        )

        if not (200 <= result['status'] < 300):
            raise TransportError(
                f"{config.method} {url} returned {result['statusText'] or 'an error'}",
                status_code=result['status'],
                response=result,
            )
        return StepOutcome(result=result)

    async def load_connector(self, owner_id: Optional[str], connector_id: str) -> Connector:
        """
        Load a connector snapshot, refreshing its OAuth2 token first when it is
        within the refresh buffer.

        Raises:
            AuthenticationError: If the connector does not exist
        """
        connector = await asyncio.to_thread(self.storage.get_connector, owner_id, connector_id)
        if connector is None:
            raise AuthenticationError(connector_id, "connector not found")

        if (
            connector.auth_type == AuthType.OAUTH2
            and self.token_service is not None
            and self.token_service.needs_refresh(connector)
        ):
            logger.info(f"Token for connector {connector.id} is near expiry, refreshing before call")
            await asyncio.to_thread(self.token_service.refresh_specific_connector, owner_id, connector.id)
            connector = await asyncio.to_thread(self.storage.get_connector, owner_id, connector_id) or connector

        return connector

    @staticmethod
    def build_url(endpoint: str, connector: Optional[Connector] = None) -> str:
        endpoint = endpoint.strip()
        if endpoint.startswith(('http://', 'https://')):
            return endpoint
        if connector is not None and connector.base_url:
            return f"{connector.base_url.rstrip('/')}/{endpoint.lstrip('/')}"
        return endpoint

    async def send_request(
        self,
        method: str,
        url: str,
        params: Dict[str, Any],
        headers: Dict[str, str],
        body: Any,
        timeout: float,
        parse_json: bool = True,
    ) -> Dict[str, Any]:
        """
        Issue one HTTP request and capture the response.

        Raises:
            TransportError: On timeouts and network errors
        """
        request_kwargs: Dict[str, Any] = {'params': params or None, 'headers': headers}
        if body is not None and body is not UNDEFINED:
            if isinstance(body, (dict, list)):
                request_kwargs['json'] = body
            else:
                request_kwargs['content'] = VariableResolver.stringify(body)
                try:
                    if isinstance(json.loads(request_kwargs['content']), (dict, list)):
                        request_kwargs['headers'] = {'Content-Type': 'application/json', **headers}
                except ValueError:
                    pass

        started = time.monotonic()
        try:
            async with httpx.AsyncClient(transport=self.transport, timeout=timeout) as client:
                response = await client.request(method, url, **request_kwargs)
        except httpx.TimeoutException:
            raise TransportError(f"{method} {url} timed out after {timeout}s")
        except httpx.HTTPError as e:
            raise TransportError(f"{method} {url} failed: {e}")
        response_time = int((time.monotonic() - started) * 1000)

        response_body: Any = response.text
        if parse_json and response.content:
            try:
                response_body = response.json()
            except ValueError:
                pass

        return {
            'status': response.status_code,
            'statusText': response.reason_phrase,
            'responseTime': response_time,
            'body': response_body,
            'headers': dict(response.headers),
            'url': str(response.request.url),
        }

    # ------------------------------------------------------------------
    # setVariable
    # ------------------------------------------------------------------

    async def process_set_variable(self, node: Node, resolver: VariableResolver, execution_logger, owner_id: Optional[str]) -> StepOutcome:
        config: SetVariableConfig = node.config

        if config.use_transform:
            if config.source_path:
                source = resolver.resolve(_as_template(config.source_path), node.id)
            else:
                source = resolver.resolve(config.variable_value, node.id)
            if source is UNDEFINED:
                source = None

            value = evaluate_transform(config.transform_script, source)
            if value is None:
                # The previous value of the variable stays untouched
                raise ScriptError("Transform returned no value")
        else:
            value = resolver.resolve(config.variable_value, node.id)
            if value is UNDEFINED:
                value = None

        resolver.context.vars[config.variable_key] = value
        execution_logger.debug(f"Set vars.{config.variable_key}", node_id=node.id)
        return StepOutcome(result={'variableKey': config.variable_key, 'value': value})

    # ------------------------------------------------------------------
    # ifElse
    # ------------------------------------------------------------------

    async def process_if_else(self, node: Node, resolver: VariableResolver, execution_logger, owner_id: Optional[str]) -> StepOutcome:
        config: IfElseConfig = node.config
        outcome = BranchingHandler(resolver).evaluate(config, node.id)
        execution_logger.info(f"Condition evaluated to {str(outcome).lower()}", node_id=node.id)
        return StepOutcome(result={
            'outcome': outcome,
            'branch': 'true' if outcome else 'false',
            'next': config.true_next if outcome else config.false_next,
        })

    # ------------------------------------------------------------------
    # log
    # ------------------------------------------------------------------

    async def process_log(self, node: Node, resolver: VariableResolver, execution_logger, owner_id: Optional[str]) -> StepOutcome:
        config: LogConfig = node.config
        message = resolver.resolve_text(config.message, node.id)
        execution_logger.log(config.log_level.value, message, node_id=node.id)
        return StepOutcome(result={'message': message, 'level': config.log_level.value})

    # ------------------------------------------------------------------
    # delay
    # ------------------------------------------------------------------

    async def process_delay(self, node: Node, resolver: VariableResolver, execution_logger, owner_id: Optional[str]) -> StepOutcome:
        config: DelayConfig = node.config

        if config.delay_type == DelayType.CRON:
            # Scheduling belongs to the external scheduler; record it and move on
            execution_logger.info(f"Scheduled with cron expression {config.cron_expression}", node_id=node.id)
            return StepOutcome(result={'scheduled': True, 'cronExpression': config.cron_expression})

        raw_amount = resolver.resolve(config.delay_amount, node.id)
        try:
            amount = float(raw_amount)
        except (TypeError, ValueError):
            raise FlowExecutionError(f"Invalid delay amount: {VariableResolver.stringify(raw_amount)!r}")
        if amount < 0:
            raise FlowExecutionError("Delay amount must not be negative")

        seconds = amount * _UNIT_SECONDS[config.delay_unit]
        if seconds > self.max_delay_seconds:
            execution_logger.warn(
                f"Delay of {seconds:g}s capped at {self.max_delay_seconds:g}s", node_id=node.id
            )
            seconds = self.max_delay_seconds

        await self.sleep(seconds)
        return StepOutcome(result={'delayedMs': int(seconds * 1000)})

    # ------------------------------------------------------------------
    # stopJob
    # ------------------------------------------------------------------

    async def process_stop_job(self, node: Node, resolver: VariableResolver, execution_logger, owner_id: Optional[str]) -> StepOutcome:
        config: StopJobConfig = node.config

        message = None
        if config.error_variable:
            message = resolver.resolve_text(_as_template(config.error_variable), node.id) or None
        if message is None and config.error_message:
            message = resolver.resolve_text(config.error_message, node.id)

        return StepOutcome(
            result={'stopType': config.stop_type.value, 'message': message},
            stop=config.stop_type,
            message=message,
        )
