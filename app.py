import atexit
import logging
import os
import secrets

from dotenv import load_dotenv
from flask import Flask, jsonify
from werkzeug.exceptions import HTTPException

from app_services import AppServices, config_from_env
from blueprints.api import create_api_blueprint
from record_client import RecordClient
from word_sync import WordSyncService

logging.basicConfig(
    level=logging.INFO,
    format="[%(asctime)s] %(levelname)s: %(message)s",
)

# Load the .env file
load_dotenv()

app = Flask(__name__)
app.config["SECRET_KEY"] = os.getenv("SECRET_KEY", secrets.token_hex(32))

IS_PROD = os.getenv("IS_PROD", "False").lower() in ("true", "1", "t")
HOST = os.getenv("HOST", "127.0.0.1")
PORT = os.getenv("PORT", "8040")

services = AppServices(app=app, config=config_from_env())
services.configure_logging()
services.validate_runtime_config()

record_store = RecordClient(
    None if services.config.standalone else (services.config.record_api_url or None),
    services.config.db_path,
    timeout=services.config.store_timeout_seconds,
)
if record_store.is_remote:
    app.logger.info("Record store: using API at %s", record_store.base_url)
else:
    app.logger.info("Record store: using local SQLite database (%s)", record_store.db_path)

word_sync_service = WordSyncService(
    store=record_store,
    round_seconds=services.effective_round_seconds(),
    history_scope=services.effective_history_scope(),
    poll_interval=services.effective_poll_seconds(),
    metrics=services.record_metric,
)
word_sync_service.engine.add_abandon_listener(
    lambda code: app.logger.info("Session %s abandoned after a player left.", code)
)

app.before_request(services.start_timer)
app.after_request(services.log_request)
app.teardown_request(services.log_exception)

app.register_blueprint(
    create_api_blueprint(word_sync_service=word_sync_service, services=services)
)

services.start_engine(word_sync_service)
atexit.register(services.stop_engine)


@app.route("/health")
def health():
    return jsonify(status="ok")


@app.errorhandler(HTTPException)
def handle_http_error(e):
    return jsonify(error=e.name, description=e.description), e.code


@app.errorhandler(Exception)
def handle_unexpected_error(e):
    app.logger.error(
        "Unhandled exception",
        exc_info=(type(e), e, e.__traceback__),
    )
    description = (
        "The server encountered an internal error and was unable to complete your request. "
        "Either the server is overloaded or there is an error in the application."
    )
    return jsonify(error="Internal Server Error", description=description), 500


if __name__ == "__main__":
    app.run(debug=not IS_PROD, host=HOST, port=int(PORT))
