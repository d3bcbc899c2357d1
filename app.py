import os
from datetime import timedelta
from typing import Optional

from flask import Flask, jsonify, request, session
from supabase import Client, create_client

from extensions import db
from fundraisers import build_store, create_fundraisers_blueprint
from fundraisers.notifications import DEFAULT_EMAIL_FROM, LoggingEmailSender, ResendEmailSender
from fundraisers.records import Person

# ====== Feature toggle ======
def _env_flag(name: str, default: bool) -> bool:
    """Parse truthy feature-toggle values from the environment."""
    value = os.environ.get(name)
    if value is None:
        return default
    return value.strip().lower() in {"1", "true", "yes", "on"}


USE_SUPABASE = _env_flag("USE_SUPABASE", False)  # ✅ Supabase for fundraisers in production


def _init_supabase(app: Flask):
    """Create the Supabase client when enabled and configured, else None."""
    url = app.config.get("SUPABASE_URL")
    key = app.config.get("SUPABASE_KEY")
    if not (app.config.get("USE_SUPABASE") and url and key):
        return None
    try:
        client: Client = create_client(url, key)
    except Exception as e:
        app.logger.warning("⚠️ Could not init Supabase client: %s", e)
        return None
    return client


def _init_email_sender(app: Flask):
    api_key = app.config.get("RESEND_API_KEY")
    if not api_key:
        app.logger.info("RESEND_API_KEY not set; fundraiser emails will only be logged.")
        return LoggingEmailSender()
    return ResendEmailSender(api_key, sender=app.config.get("EMAIL_FROM") or DEFAULT_EMAIL_FROM)


def create_app(config_overrides: Optional[dict] = None) -> Flask:
    """Build the RepQuest app. ``config_overrides`` wins over the environment."""
    app = Flask(__name__)
    app.secret_key = os.environ.get("SECRET_KEY") or os.urandom(24)
    app.permanent_session_lifetime = timedelta(days=365)

    # ====== Config ======
    app.config.update(
        USE_SUPABASE=USE_SUPABASE,
        SUPABASE_URL=os.environ.get("SUPABASE_URL"),
        SUPABASE_KEY=os.environ.get("SUPABASE_KEY"),
        SQLALCHEMY_DATABASE_URI=os.environ.get("DATABASE_URL", "sqlite:///repquest.db"),
        SQLALCHEMY_TRACK_MODIFICATIONS=False,
        RESEND_API_KEY=os.environ.get("RESEND_API_KEY"),
        EMAIL_FROM=os.environ.get("EMAIL_FROM", DEFAULT_EMAIL_FROM),
        APP_URL=os.environ.get("APP_URL", "http://localhost:8080"),
        CRON_SECRET=os.environ.get("CRON_SECRET"),
        MISSING_PROGRESS_POLICY=os.environ.get("MISSING_PROGRESS_POLICY", "zero"),
        SETTLEMENT_RETRY_GRACE_SECONDS=int(os.environ.get("SETTLEMENT_RETRY_GRACE_SECONDS", 3600)),
    )
    if config_overrides:
        app.config.update(config_overrides)

    # ====== Supabase / database setup ======
    if "SUPABASE_CLIENT" not in app.config:
        app.config["SUPABASE_CLIENT"] = _init_supabase(app)
    if not app.config.get("EMAIL_SENDER"):
        app.config["EMAIL_SENDER"] = _init_email_sender(app)

    db.init_app(app)
    with app.app_context():
        import models  # noqa: F401  (register tables before create_all)

        db.create_all()

    def get_current_user() -> Optional[Person]:
        """Return the logged-in RepQuest user or None."""
        user_id = session.get("user_id")
        if not user_id:
            return None
        return build_store(app).get_person(str(user_id))

    app.register_blueprint(create_fundraisers_blueprint(get_current_user))

    @app.errorhandler(404)
    @app.errorhandler(405)
    @app.errorhandler(500)
    def show_error(err):
        status_code = getattr(err, "code", 500) or 500
        if status_code == 500:
            app.logger.error("Unhandled error on %s: %s", request.path, err)
        return jsonify({"error": getattr(err, "name", "Server Error")}), status_code

    @app.get("/healthz")
    def healthz():
        return jsonify({"ok": True, "supabase": bool(app.config.get("SUPABASE_CLIENT"))})

    return app


if __name__ == "__main__":
    create_app().run(host="0.0.0.0", port=int(os.environ.get("PORT", 8080)), debug=True)
