import atexit
import logging
import os
from typing import Any, Dict, Optional

from flask import Flask, jsonify, request
from flask_cors import CORS

from sqlgateway.exceptions import ConfigurationError
from sqlgateway.gateway import INTERNAL_ERROR, DatabaseGateway, Operation
from sqlgateway.utils.async_task_manager import AsyncTaskManager
from sqlgateway.utils.config_manager import configure_logging, load_settings

logger = logging.getLogger(__name__)


def create_app(gateway: DatabaseGateway, runner: AsyncTaskManager) -> Flask:
    app = Flask(__name__)
    CORS(app)

    @app.route('/health', methods=['GET'])
    def health():
        manager = gateway.context.connection_manager
        connected = runner.run(manager.test_connection()) if len(manager) else False
        payload = {
            'status': 'ok',
            'database_connected': connected,
            'monitoring': gateway.context.monitor.is_monitoring,
        }
        return jsonify(payload), 200

    @app.route('/operations', methods=['GET'])
    def list_operations():
        return jsonify({'operations': Operation.names()}), 200

    @app.route('/operations/<operation>', methods=['POST'])
    def run_operation(operation: str):
        if operation not in Operation.names():
            logger.warning(f"Unknown operation requested: {operation}")
            response = runner.run(gateway.handle(operation, {}))
            return jsonify(response.to_dict()), 404

        parameters: Optional[Dict[str, Any]] = {}
        if request.data:
            if not request.is_json:
                logger.warning("Invalid data format.")
                return jsonify({'success': False, 'message': 'Request must be JSON',
                                'error_type': 'invalid_parameters'}), 400
            parameters = request.get_json(silent=True)
            if not isinstance(parameters, dict):
                return jsonify({'success': False, 'message': 'Request body must be a JSON object',
                                'error_type': 'invalid_parameters'}), 400

        response = runner.run(gateway.handle(operation, parameters))
        if response.success:
            status = 200
        elif response.error_type == INTERNAL_ERROR:
            status = 500
        else:
            status = 400
        logger.info(f"Operation {operation} -> {status}")
        return jsonify(response.to_dict()), status

    return app


def main(config_path: Optional[str] = None) -> None:
    try:
        settings = load_settings(config_path or os.environ.get("SQLGATEWAY_CONFIG"))
    except ConfigurationError as e:
        configure_logging()
        logger.error(f"Configuration error: {e.message}")
        raise SystemExit(1)

    configure_logging(settings.log_level)

    runner = AsyncTaskManager()
    runner.start()
    gateway = DatabaseGateway.from_settings(settings)

    def shutdown():
        runner.run(gateway.close())
        runner.stop()

    atexit.register(shutdown)

    app = create_app(gateway, runner)
    logger.info(f"Starting sqlgateway API on {settings.api_host}:{settings.api_port}")
    app.run(host=settings.api_host, port=settings.api_port)


if __name__ == '__main__':
    main()
