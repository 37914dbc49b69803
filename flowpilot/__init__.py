import atexit
import logging

from flask import Flask
from flask_cors import CORS

from flowpilot.config import Config


def create_app(config_class=Config, storage=None, transport=None):
    app = Flask(__name__)
    app.config.from_object(config_class)

    logging.basicConfig(
        level=getattr(logging, str(app.config['LOG_LEVEL']).upper(), logging.INFO),
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )

    allowed_origins = [origin.strip() for origin in app.config['CORS_ORIGINS'].split(',') if origin.strip()]
    CORS(app,
         resources={r"/api/*": {"origins": allowed_origins}},
         supports_credentials=False,
         allow_headers=["Content-Type", "Authorization", "X-Owner-ID"],
         methods=["GET", "POST", "OPTIONS"])

    from flowpilot.flow_engine import FlowExecutor
    from flowpilot.services.storage import MemoryStorage
    from flowpilot.services.token_refresh_service import TokenRefreshService
    from flowpilot.utils.credentials_encryption import CredentialsEncryption

    if storage is None:
        encryption = None
        if app.config['INTEGRATION_ENCRYPTION_KEY']:
            encryption = CredentialsEncryption(app.config['INTEGRATION_ENCRYPTION_KEY'])
        storage = MemoryStorage(encryption)

    token_service = TokenRefreshService(
        storage,
        interval=app.config['TOKEN_REFRESH_INTERVAL_SECONDS'],
        buffer=app.config['TOKEN_REFRESH_BUFFER_SECONDS'],
        transport=transport,
        timeout=app.config['HTTP_TIMEOUT_SECONDS'],
    )
    executor = FlowExecutor(
        storage,
        token_service=token_service,
        transport=transport,
        http_timeout=app.config['HTTP_TIMEOUT_SECONDS'],
        while_loop_limit=app.config['WHILE_LOOP_MAX_ITERATIONS'],
        max_delay_seconds=app.config['MAX_DELAY_SECONDS'],
    )

    app.extensions['storage'] = storage
    app.extensions['token_refresh_service'] = token_service
    app.extensions['flow_executor'] = executor

    if app.config['TOKEN_REFRESH_ENABLED']:
        token_service.start()
        atexit.register(token_service.stop)

    from flowpilot.routes import flows
    app.register_blueprint(flows.flows_bp)

    from flowpilot.routes import executions
    app.register_blueprint(executions.executions_bp)

    from flowpilot.routes import nodes
    app.register_blueprint(nodes.nodes_bp)

    from flowpilot.routes import connectors
    app.register_blueprint(connectors.connectors_bp)

    from flowpilot.routes import health
    app.register_blueprint(health.bp)

    return app
