"""
Provides an application factory that constructs and configures the Flask
instance serving the Finstat API.
"""

from typing import Any, Dict, Optional
from datetime import timezone, tzinfo
import atexit
import hmac
import logging
import threading
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

try:
    from flask import Flask, Response, jsonify, request
except Exception as exc:
    raise RuntimeError(
        "Flask is required to run the Finstat server. "
        "Install with: pip install Flask"
    ) from exc

logger = logging.getLogger(__name__)

PROTECTED_PREFIXES = ("/api/", "/proxy/", "/sync/", "/stats/")
VIEWED_ITEM_TYPES = ("Audio", "Movie", "Series")


class InvalidParameter(ValueError):
    """
    Raised by route helpers for malformed request parameters.
    """


def resolve_timezone(name: Optional[str]) -> tzinfo:
    """
    Timezone used for hour/day statistics buckets. Unknown names fall back to
    UTC.
    """
    name = (name or "").strip()
    if not name or name.upper() == "UTC":
        return timezone.utc
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError):
        logger.warning("Unknown timezone %r, using UTC", name)
        return timezone.utc


def positive_int(params: Dict[str, Any], key: str, default: int) -> int:
    """
    Read a positive integer request parameter.
    """
    value = params.get(key)
    if value is None or value == "":
        return default
    if isinstance(value, bool) or (
        isinstance(value, float) and not value.is_integer()
    ):
        raise InvalidParameter(f"{key} must be a positive integer")
    try:
        number = int(value)
    except (TypeError, ValueError):
        raise InvalidParameter(f"{key} must be a positive integer")
    if number <= 0:
        raise InvalidParameter(f"{key} must be a positive integer")
    return number


def required_str(params: Dict[str, Any], key: str) -> str:
    value = params.get(key)
    if not isinstance(value, str) or not value.strip():
        raise InvalidParameter(f"{key} is required")
    return value.strip()


def request_params() -> Dict[str, Any]:
    """
    Query string arguments merged with the JSON body, body wins.
    """
    params: Dict[str, Any] = request.args.to_dict()
    body = request.get_json(silent=True)
    if isinstance(body, dict):
        params.update(body)
    return params


def create_app(test_config: Optional[Dict] = None) -> "Flask":
    """
    Create and configure the Finstat Flask application.
    """
    app = Flask(__name__)

    app.config.setdefault("DEBUG", False)
    app.config.setdefault("PORT", 2929)
    app.config.setdefault("DATABASE_URL", "sqlite:///finstat.db")
    app.config.setdefault("ENCRYPTION_KEY_PATH", "secret.key")
    app.config.setdefault("DATA_DATABASE_URL", "sqlite:///finstat_data.db")
    app.config.setdefault("API_TOKEN", None)
    app.config.setdefault("TIMEZONE", "UTC")
    app.config.setdefault("MIN_PLAY_SECONDS", 30)

    if test_config:
        app.config.update(test_config)
        if app.config.get("DEBUG", False):
            if "DATABASE_URL" not in test_config:
                app.config["DATABASE_URL"] = "sqlite:///:memory:"
            if "ENCRYPTION_KEY_PATH" not in test_config:
                app.config["ENCRYPTION_KEY_PATH"] = ":memory:"
            if "DATA_DATABASE_URL" not in test_config:
                app.config["DATA_DATABASE_URL"] = "sqlite:///:memory:"

    tz = resolve_timezone(app.config.get("TIMEZONE"))

    from services.settings_store import SettingsService, MASKED_API_KEY
    svc = SettingsService(
        database_url=app.config["DATABASE_URL"],
        encryption_key_path=app.config["ENCRYPTION_KEY_PATH"],
    )

    from services.repository import Repository
    repo = Repository(
        database_url=app.config["DATA_DATABASE_URL"]
    )

    from services.jellyfin import create_client, clean_server_url
    jf = create_client(svc)

    from services.sync_service import SyncService
    sync = SyncService(
        jellyfin_client=jf,
        repository=repo,
        settings_service=svc,
    )

    from services.activity_monitor import ActivityMonitor
    monitor = ActivityMonitor(
        jellyfin_client=jf,
        repository=repo,
        min_play_seconds=app.config["MIN_PLAY_SECONDS"],
    )

    def periodic_sync() -> None:
        if svc.is_configured():
            sync.sync_periodic()

    def poll_sessions() -> None:
        if svc.is_configured():
            monitor.poll()

    from services.sync_scheduler import SyncScheduler
    current = svc.get()
    schedulers = [
        SyncScheduler(
            job=periodic_sync,
            interval_seconds=current.get("sync_interval") or 1800,
            name="sync",
        ),
        SyncScheduler(
            job=poll_sessions,
            interval_seconds=current.get("monitor_interval") or 5,
            name="monitor",
        ),
    ]

    if not app.config.get("DEBUG"):
        for scheduler in schedulers:
            scheduler.start()

    app.extensions["finstat"] = {
        "settings": svc,
        "repository": repo,
        "jellyfin": jf,
        "sync": sync,
        "monitor": monitor,
        "schedulers": schedulers,
    }

    def cleanup():
        """
        Cleanup function called when app shuts down.
        """
        for scheduler in schedulers:
            try:
                scheduler.stop()
            except Exception:
                logger.debug("Failed to stop %s scheduler", scheduler.name)
        for engine in (svc.engine, repo.engine):
            try:
                engine.dispose()
            except Exception:
                logger.debug("Failed to dispose engine %s", engine.url)

    atexit.register(cleanup)

    def run_in_background(target, name: str) -> None:
        def runner():
            try:
                target()
            except Exception:
                logger.exception("Background %s failed", name)

        threading.Thread(target=runner, name=name, daemon=True).start()

    # -------------------------
    # Request hooks and errors
    # -------------------------

    @app.before_request
    def _check_token() -> Optional[Response]:
        token = app.config.get("API_TOKEN")
        if not token or not request.path.startswith(PROTECTED_PREFIXES):
            return None

        supplied = request.headers.get("X-Auth-Token") or ""
        auth = request.headers.get("Authorization") or ""
        if auth.lower().startswith("bearer "):
            supplied = auth[7:].strip()

        if not supplied or not hmac.compare_digest(
            supplied.encode("utf-8"), str(token).encode("utf-8")
        ):
            return jsonify({
                "ok": False,
                "message": "Unauthorized"
            }), 401
        return None

    @app.before_request
    def _require_jellyfin() -> Optional[Response]:
        if request.path.startswith("/proxy/") and not jf.config_ready:
            return jsonify({
                "ok": False,
                "message": "Jellyfin server is not configured"
            }), 503
        return None

    @app.errorhandler(InvalidParameter)
    def _invalid_parameter(exc: InvalidParameter) -> Response:
        return jsonify({
            "ok": False,
            "message": str(exc)
        }), 400

    # -------------------------
    # Settings and status
    # -------------------------

    @app.get("/api/settings")
    def get_settings() -> Response:
        return jsonify(svc.get_masked()), 200

    @app.put("/api/settings")
    def update_settings() -> Response:
        payload = request.get_json(silent=True) or {}
        if not isinstance(payload, dict):
            raise InvalidParameter("Settings must be a JSON object")

        # An empty host clears the setting
        host = payload.get("jf_host")
        if isinstance(host, str) and host.strip():
            payload["jf_host"] = clean_server_url(host)

        had_server = svc.is_configured()
        updated = svc.update(payload)
        has_server = svc.is_configured()

        schedulers[0].interval_seconds = updated.get("sync_interval") or 1800
        schedulers[1].interval_seconds = updated.get("monitor_interval") or 5

        # First configuration: pull everything once in the background
        if not had_server and has_server:
            run_in_background(sync.sync_full, "initial-sync")

        return jsonify(svc.get_masked()), 200

    @app.post("/api/validate-settings")
    def validate_settings() -> Response:
        params = request_params()
        url = params.get("url") or params.get("jf_host") or ""
        api_key = params.get("apikey") or params.get("jf_api_key") or ""

        # The UI echoes back the mask when the key was not changed
        if api_key == MASKED_API_KEY:
            api_key = svc.get().get("jf_api_key") or ""

        return jsonify(jf.validate_settings(url, api_key)), 200

    @app.get("/api/system-info")
    def system_info() -> Response:
        info = jf.get_system_info()
        if not info:
            return jsonify({
                "ok": False,
                "message": "Unable to fetch system info from Jellyfin"
            }), 503
        return jsonify({"ok": True, "data": info}), 200

    @app.get("/api/sync-status")
    def sync_status() -> Response:
        try:
            task = repo.get_latest_sync_task()
            return jsonify({
                "ok": True,
                "syncing": sync.busy or bool(task and task["result"] == "RUNNING"),
                "task": task,
            }), 200
        except Exception as exc:
            logger.exception("Failed to fetch sync status")
            return jsonify({
                "ok": False,
                "message": f"Failed to fetch sync status: {str(exc)}"
            }), 500

    @app.get("/api/tasks/latest")
    def latest_task() -> Response:
        task = repo.get_latest_task(
            task_type=request.args.get("type") or None,
            execution_type=request.args.get("execution_type") or None,
        )
        return jsonify({"ok": True, "data": task}), 200

    # -------------------------
    # Jellyfin proxy
    # -------------------------

    @app.route("/proxy/getSessions", methods=["GET", "POST"])
    def proxy_sessions() -> Response:
        return jsonify(jf.get_sessions()), 200

    @app.route("/proxy/getAdminUsers", methods=["GET", "POST"])
    def proxy_admin_users() -> Response:
        return jsonify(jf.get_admins()), 200

    @app.route("/proxy/getRecentlyAdded", methods=["GET", "POST"])
    def proxy_recently_added() -> Response:
        params = request_params()
        return jsonify(jf.get_recently_added(
            library_id=params.get("libraryid") or None,
            limit=positive_int(params, "limit", 20),
            user_id=params.get("userid") or None,
        )), 200

    @app.route("/proxy/getLibraries", methods=["GET", "POST"])
    def proxy_libraries() -> Response:
        return jsonify(jf.get_libraries()), 200

    @app.route("/proxy/getPlugins", methods=["GET", "POST"])
    def proxy_plugins() -> Response:
        return jsonify(jf.get_installed_plugins()), 200

    @app.route("/proxy/getItemInfo", methods=["GET", "POST"])
    def proxy_item_info() -> Response:
        params = request_params()
        return jsonify(jf.get_item_info(
            required_str(params, "Id"),
            user_id=params.get("userid") or None,
        )), 200

    @app.route("/proxy/getItemsByID", methods=["GET", "POST"])
    def proxy_items_by_id() -> Response:
        ids = request_params().get("ids")
        if isinstance(ids, list):
            ids = [str(i) for i in ids if i]
        if not ids or not isinstance(ids, (str, list)):
            raise InvalidParameter("ids is required")
        return jsonify(jf.get_items_by_id(ids)), 200

    @app.route("/proxy/getSeasons", methods=["GET", "POST"])
    def proxy_seasons() -> Response:
        return jsonify(jf.get_seasons(required_str(request_params(), "id"))), 200

    @app.route("/proxy/getEpisodes", methods=["GET", "POST"])
    def proxy_episodes() -> Response:
        params = request_params()
        return jsonify(jf.get_episodes(
            required_str(params, "id"),
            required_str(params, "seasonid"),
        )), 200

    # -------------------------
    # Sync
    # -------------------------

    def sync_response(run) -> Response:
        result = run()
        if result.busy:
            return jsonify({
                "ok": False,
                "message": "A sync is already running"
            }), 409
        return jsonify({
            "ok": result.success,
            "data": result.to_dict()
        }), 200

    @app.post("/sync/beginSync")
    def begin_sync() -> Response:
        """
        Trigger a manual full sync.
        """
        return sync_response(sync.sync_full)

    @app.post("/sync/beginPartialSync")
    def begin_partial_sync() -> Response:
        """
        Trigger a manual recently-added sync.
        """
        return sync_response(sync.sync_partial)

    @app.post("/sync/syncPlaybackPluginData")
    def sync_playback_plugin_data() -> Response:
        """
        Import history from the Playback Reporting plugin.
        """
        return sync_response(sync.import_playback_reporting)

    @app.post("/sync/library/<string:jellyfin_id>/tracked")
    def set_library_tracked(jellyfin_id: str) -> Response:
        """
        Update the tracked flag for a library.
        """
        payload = request.get_json(silent=True) or {}
        tracked = payload.get("tracked", None) if isinstance(payload, dict) else None
        if not isinstance(tracked, bool):
            raise InvalidParameter("tracked must be boolean")

        updated = repo.set_library_tracked(jellyfin_id, tracked)
        if not updated:
            return jsonify({
                "ok": False,
                "message": "Library not found"
            }), 404

        return jsonify({"ok": True, "data": updated}), 200

    # -------------------------
    # Statistics
    # -------------------------

    def stats_response(query: str, **kwargs: Any) -> Response:
        try:
            return jsonify(repo.run_stats(query, **kwargs)), 200
        except Exception as exc:
            logger.exception("Statistics query %s failed", query)
            return jsonify({
                "ok": False,
                "message": f"Failed to fetch statistics: {str(exc)}"
            }), 500

    def days_param() -> int:
        return positive_int(request_params(), "days", 30)

    @app.post("/stats/getViewsByHour")
    def stats_views_by_hour() -> Response:
        return stats_response("views_by_hour", days=days_param(), tz=tz)

    @app.post("/stats/getViewsByDays")
    def stats_views_by_days() -> Response:
        return stats_response("views_by_day_of_week", days=days_param(), tz=tz)

    @app.post("/stats/getViewsOverTime")
    def stats_views_over_time() -> Response:
        return stats_response("views_over_time", days=days_param(), tz=tz)

    @app.post("/stats/getMostViewedLibraries")
    def stats_most_viewed_libraries() -> Response:
        return stats_response("most_viewed_libraries", days=days_param())

    @app.post("/stats/getMostActiveUsers")
    def stats_most_active_users() -> Response:
        return stats_response("most_active_users", days=days_param())

    @app.post("/stats/getMostUsedClients")
    def stats_most_used_clients() -> Response:
        return stats_response("most_used_clients", days=days_param())

    @app.post("/stats/getPlaybackMethodStats")
    def stats_playback_methods() -> Response:
        return stats_response("playback_methods", days=days_param())

    @app.post("/stats/getMostViewedByType")
    def stats_most_viewed_by_type() -> Response:
        params = request_params()
        item_type = params.get("type") or "Movie"
        if item_type not in VIEWED_ITEM_TYPES:
            raise InvalidParameter(
                f"type must be one of {', '.join(VIEWED_ITEM_TYPES)}"
            )
        return stats_response(
            "most_viewed_items",
            days=positive_int(params, "days", 30),
            item_type=item_type,
        )

    @app.post("/stats/getLibraryLastPlayed")
    def stats_library_last_played() -> Response:
        library_id = required_str(request_params(), "libraryid")
        return stats_response("last_library_activity", library_id=library_id)

    @app.post("/stats/getGlobalUserStats")
    def stats_global_user() -> Response:
        params = request_params()
        return stats_response(
            "global_user_stats",
            user_id=required_str(params, "userid"),
            hours=positive_int(params, "hours", 24),
        )

    @app.post("/stats/getGlobalItemStats")
    def stats_global_item() -> Response:
        params = request_params()
        return stats_response(
            "global_item_stats",
            item_id=required_str(params, "itemid"),
            hours=positive_int(params, "hours", 24),
        )

    @app.post("/stats/getUserLastPlayed")
    def stats_user_last_played() -> Response:
        return stats_response(
            "user_last_played",
            user_id=required_str(request_params(), "userid"),
        )

    @app.post("/stats/getLibraryOverview")
    def stats_library_overview() -> Response:
        return stats_response("library_overview")

    return app


if __name__ == "__main__":
    application = create_app()
    application.run(
        host="127.0.0.1",
        port=application.config["PORT"]
    )
