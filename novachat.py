#!/usr/bin/env python3
"""
NovaChat - Flask + Socket.IO chat server
Direct chats, group channels (nexphere) and broadcast channels (nexus) with
live presence, typing indicators and room based message delivery.
"""

import logging
import os
from datetime import timedelta

from flask import Flask, current_app, g, jsonify, request, session
from flask_socketio import SocketIO
from werkzeug import exceptions as http_exceptions

import admin_api
import chat_routes
import socket_events
from blocks import BlockList
from broadcaster import RealtimeBroadcaster
from chat_services import Services, current_services, request_data, require_writable
from chat_db import bool_setting, close_connection, get_db, init_db, transaction
from chat_errors import ChatError, Forbidden, InvalidInput
from conversations import ConversationGateway, parse_id
from presence import PresenceRegistry
from session_gate import SessionGate, login_required, session_key
from uploads import DEFAULT_ALLOWED_EXTS

logger = logging.getLogger(__name__)

DEFAULT_CONFIG = {
    "SECRET_KEY": "dev-secret-key-change-this-in-production",
    "DATABASE": "novachat.db",
    "DB_TIMEOUT": 5.0,
    "UPLOAD_FOLDER": "uploads",
    "MAX_UPLOAD_MB": 25,
    "ALLOWED_UPLOAD_EXTS": sorted(DEFAULT_ALLOWED_EXTS),
    "SESSION_LIFETIME_DAYS": 30,
    "ADMIN_SECRET": "",
    "MESSAGE_PAGE_SIZE": 50,
    "MESSAGE_PAGE_MAX": 200,
    "MAX_MESSAGE_CHARS": 4000,
    "DISPLAY_TIMEZONE": "UTC",
    "TYPING_REVERT_SECONDS": 3.0,
    "PHOTO_REVERT_SECONDS": 2.0,
    "CORS_ALLOWED_ORIGINS": "*",
    "SOCKETIO_LOGGER": False,
    "LOG_LEVEL": "INFO",
}

PROFILE_NAME_MAX = 40
PROFILE_BIO_MAX = 300
PROFILE_AVATAR_MAX = 300


def _coerce(raw: str, default):
    if isinstance(default, bool):
        return raw.strip().lower() in ("1", "true", "yes", "on")
    if isinstance(default, int):
        return int(raw)
    if isinstance(default, float):
        return float(raw)
    if isinstance(default, list):
        return [p.strip().lower() for p in raw.split(",") if p.strip()]
    return raw


def load_config(overrides: dict = None) -> dict:
    config = dict(DEFAULT_CONFIG)
    if os.environ.get("SECRET_KEY"):
        config["SECRET_KEY"] = os.environ["SECRET_KEY"]
    for key, default in DEFAULT_CONFIG.items():
        raw = os.environ.get(f"NOVACHAT_{key}")
        if raw is not None:
            config[key] = _coerce(raw, default)
    config.update(overrides or {})
    config["MAX_CONTENT_LENGTH"] = int(config["MAX_UPLOAD_MB"]) * 1024 * 1024
    config["PERMANENT_SESSION_LIFETIME"] = timedelta(days=int(config["SESSION_LIFETIME_DAYS"]))
    return config


def _socketio_scheduler(socketio: SocketIO):
    def schedule(delay, callback):
        def run_later():
            socketio.sleep(delay)
            callback()
        return socketio.start_background_task(run_later)
    return schedule


def create_app(config: dict = None, presence_scheduler=None) -> Flask:
    app = Flask(__name__)
    app.config.update(load_config(config))
    os.makedirs(app.config["UPLOAD_FOLDER"], exist_ok=True)

    socketio = SocketIO(
        app,
        cors_allowed_origins=app.config["CORS_ALLOWED_ORIGINS"],
        logger=app.config["SOCKETIO_LOGGER"],
        engineio_logger=app.config["SOCKETIO_LOGGER"],
    )
    broadcaster = RealtimeBroadcaster(socketio)
    presence = PresenceRegistry(
        broadcaster,
        scheduler=presence_scheduler or _socketio_scheduler(socketio),
        delays={
            "typing": app.config["TYPING_REVERT_SECONDS"],
            "recording-voice": app.config["TYPING_REVERT_SECONDS"],
            "sending-video": app.config["TYPING_REVERT_SECONDS"],
            "sending-photo": app.config["PHOTO_REVERT_SECONDS"],
        },
        tz_name=app.config["DISPLAY_TIMEZONE"],
    )
    gateway = ConversationGateway(
        get_db,
        broadcaster,
        presence,
        default_page=app.config["MESSAGE_PAGE_SIZE"],
        max_page=app.config["MESSAGE_PAGE_MAX"],
        max_chars=app.config["MAX_MESSAGE_CHARS"],
    )
    app.extensions["novachat"] = Services(
        broadcaster=broadcaster,
        presence=presence,
        gate=SessionGate(get_db, app.config["PERMANENT_SESSION_LIFETIME"]),
        gateway=gateway,
        blocks=BlockList(get_db, gateway),
    )

    app.teardown_appcontext(close_connection)
    with app.app_context():
        init_db(get_db())
        purged = app.extensions["novachat"].gate.purge_expired()
        if purged:
            logger.info("Purged %d expired sessions", purged)

    _register_error_handlers(app)
    app.before_request(_maintenance_gate)
    _register_account_routes(app)
    chat_routes.register_chat_routes(app)
    admin_api.register_admin_routes(app)
    socket_events.register_socket_events(socketio, app)
    return app


def _register_error_handlers(app: Flask):
    @app.errorhandler(ChatError)
    def _chat_error(e):
        return jsonify(e.to_dict()), e.status

    @app.errorhandler(http_exceptions.RequestEntityTooLarge)
    def _too_large(e):
        err = InvalidInput("File too large")
        return jsonify(err.to_dict()), err.status

    @app.errorhandler(http_exceptions.HTTPException)
    def _http_error(e):
        return jsonify({"ok": False, "error": e.name.lower()}), e.code

    @app.errorhandler(Exception)
    def _internal_error(e):
        app.logger.exception("Unhandled error on %s %s", request.method, request.path)
        return jsonify({"ok": False, "error": "Internal server error"}), 500


MAINTENANCE_EXEMPT = ("/login", "/logout", "/admin")


def _maintenance_gate():
    if request.method in ("GET", "HEAD", "OPTIONS"):
        return
    if request.path.startswith(MAINTENANCE_EXEMPT):
        return
    require_writable()


def _register_account_routes(app: Flask):
    @app.route("/healthz")
    def healthcheck():
        get_db().execute("SELECT 1").fetchone()
        return jsonify({"ok": True})

    @app.route("/register", methods=["POST"])
    def register():
        if not bool_setting(get_db(), "REGISTRATION_ENABLED"):
            raise Forbidden("Registration is closed")
        data = request_data()
        user_id = current_services().gate.register(
            data.get("username"), data.get("password"), data.get("displayName")
        )
        svc = current_services()
        svc.broadcast_stats()
        return jsonify({"ok": True, "user": svc.gateway.user_profile(user_id)}), 201

    @app.route("/login", methods=["POST"])
    def login():
        data = request_data()
        gate = current_services().gate
        token = gate.authenticate(data.get("username"), data.get("password"))
        session.clear()
        session["token"] = token
        session.permanent = True
        user = current_services().gateway.user_profile(gate.resolve(token))
        return jsonify({"ok": True, "user": user})

    @app.route("/logout", methods=["POST"])
    def logout():
        svc = current_services()
        token = session.get("token")
        if token:
            svc.gate.invalidate(token)
            closed = svc.broadcaster.disconnect_session(session_key(token))
            if closed:
                logger.info("Logout closed %d socket(s)", closed)
        session.clear()
        return jsonify({"ok": True})

    @app.route("/api/me", methods=["GET"])
    @login_required
    def api_me():
        return jsonify({"ok": True, "user": current_services().gateway.user_profile(g.user_id)})

    @app.route("/api/me", methods=["PATCH"])
    @login_required
    def api_me_update():
        data = request_data()
        fields = {}
        if "displayName" in data:
            name = (data.get("displayName") or "").strip()
            if not name or len(name) > PROFILE_NAME_MAX:
                raise InvalidInput(f"Display name must be 1-{PROFILE_NAME_MAX} characters")
            fields["display_name"] = name
        if "bio" in data:
            bio = (data.get("bio") or "").strip()
            if len(bio) > PROFILE_BIO_MAX:
                raise InvalidInput(f"Bio is limited to {PROFILE_BIO_MAX} characters")
            fields["bio"] = bio or None
        if "avatar" in data:
            avatar = (data.get("avatar") or "").strip()
            if len(avatar) > PROFILE_AVATAR_MAX:
                raise InvalidInput("Avatar reference too long")
            fields["avatar"] = avatar or None
        if fields:
            assignments = ", ".join(f"{k}=?" for k in fields)
            with transaction(get_db()) as cur:
                cur.execute(
                    f"UPDATE users SET {assignments} WHERE id=?", list(fields.values()) + [g.user_id]
                )
        return jsonify({"ok": True, "user": current_services().gateway.user_profile(g.user_id)})

    @app.route("/api/account", methods=["DELETE"])
    @login_required
    def api_account_delete():
        data = request_data()
        svc = current_services()
        if not data.get("password"):
            raise InvalidInput("password required")
        if not svc.gate.verify_password(g.user_id, data.get("password")):
            raise Forbidden("invalid password")
        svc.delete_user(g.user_id, current_app.config["UPLOAD_FOLDER"])
        session.clear()
        return jsonify({"ok": True})

    @app.route("/api/users/search")
    @login_required
    def api_users_search():
        q = (request.args.get("q") or "").strip()
        if not q:
            return jsonify({"ok": True, "users": []})
        pattern = "%" + q.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_") + "%"
        rows = get_db().execute(
            """
            SELECT id, username, display_name, avatar, last_seen FROM users
            WHERE (username LIKE ? ESCAPE '\\' OR display_name LIKE ? ESCAPE '\\') AND id != ?
            ORDER BY LOWER(username) LIMIT 20
            """,
            (pattern, pattern, g.user_id),
        ).fetchall()
        gateway = current_services().gateway
        return jsonify({"ok": True, "users": [gateway.user_public(r) for r in rows]})

    @app.route("/api/users/<user_id>")
    @login_required
    def api_user_profile(user_id):
        user = current_services().gateway.user_profile(parse_id(user_id, "user id"))
        return jsonify({"ok": True, "user": user})


def main():
    app = create_app()
    logging.basicConfig(
        level=app.config["LOG_LEVEL"],
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    socketio = app.extensions["socketio"]
    host = os.environ.get("NOVACHAT_HOST", "0.0.0.0")
    port = int(os.environ.get("NOVACHAT_PORT", "5000"))
    logger.info("NovaChat listening on %s:%s", host, port)
    socketio.run(app, host=host, port=port, allow_unsafe_werkzeug=True)


if __name__ == "__main__":
    main()
