from flask import Blueprint, jsonify

from blueprints.api_routes.games import register_game_api_routes


def create_api_blueprint(*, word_sync_service, services):
    bp = Blueprint("api", __name__)

    register_game_api_routes(
        bp,
        {"word_sync_service": word_sync_service, "services": services},
    )

    @bp.route("/api/ops/metrics", methods=["GET"], endpoint="api_ops_metrics")
    def api_ops_metrics():
        return jsonify(metrics=services.get_runtime_metrics())

    return bp
