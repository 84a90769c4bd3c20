from __future__ import annotations

import re
import secrets
import sqlite3
from dataclasses import asdict
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

from flask import (
    Flask,
    Response,
    current_app,
    flash,
    g,
    jsonify,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from werkzeug.security import check_password_hash, generate_password_hash

from chart_render import INTERACTIVE, READ_ONLY, render_pie_chart
from charts import aggregate_entries, format_date_time, format_time, layout_slices, slice_at, tooltip_text
from storage import EntryStore, StorageError, TimeEntry, init_db, utc_now
from timer import TimerSession, TimerStateError, ValidationError

BASE_DIR = Path(__file__).resolve().parent
DATABASE_PATH = BASE_DIR / "timetally.db"
DEFAULT_CHART_WIDTH = 500
MIN_CHART_WIDTH = 240
MAX_CHART_WIDTH = 1200
MIN_PASSWORD_LENGTH = 6

EMAIL_RE = re.compile(r"[^@\s]+@[^@\s]+\.[^@\s]+")

CHART_STYLES = {
    "mine": INTERACTIVE,
    "public": READ_ONLY,
}


def create_app(test_config: Optional[Mapping[str, Any]] = None) -> Flask:
    app = Flask(__name__)
    app.config.update(
        SECRET_KEY="change-me",
        DATABASE=str(DATABASE_PATH),
        MAGIC_LINK_MAX_AGE=15 * 60,
        TIMER_POLL_INTERVAL=1.0,
    )
    app.config.from_prefixed_env("TIMETALLY")
    if test_config is not None:
        app.config.update(test_config)

    app.jinja_env.filters["format_time"] = format_time
    app.jinja_env.filters["format_date_time"] = format_date_time
    app.extensions["timers"] = {}

    Path(app.config["DATABASE"]).parent.mkdir(parents=True, exist_ok=True)

    @app.before_request
    def load_logged_in_user() -> None:
        g.db = get_db()
        user_id = session.get("user_id")
        if user_id is None:
            g.user = None
        else:
            g.user = get_user_by_id(user_id)

    @app.teardown_appcontext
    def close_db(exception: Optional[BaseException]) -> None:  # pragma: no cover - teardown
        db = g.pop("db", None)
        if db is not None:
            db.close()

    register_routes(app)
    init_db(app.config["DATABASE"])
    app.logger.info("Database ready at %s", app.config["DATABASE"])
    return app


def get_db() -> sqlite3.Connection:
    if "db" not in g:
        conn = sqlite3.connect(current_app.config["DATABASE"])
        conn.row_factory = sqlite3.Row
        conn.execute("PRAGMA foreign_keys = ON")
        g.db = conn
    return g.db


def get_store() -> EntryStore:
    return EntryStore(get_db())


def get_user_by_id(user_id: int) -> Optional[sqlite3.Row]:
    return g.db.execute("SELECT * FROM users WHERE id = ?", (user_id,)).fetchone()


def get_timer(user_id: int) -> TimerSession:
    timers: Dict[int, TimerSession] = current_app.extensions["timers"]
    timer = timers.get(user_id)
    if timer is None:
        timer = TimerSession(user_id, poll_interval=current_app.config["TIMER_POLL_INTERVAL"])
        timers[user_id] = timer
    return timer


def register_routes(app: Flask) -> None:
    @app.route("/")
    def index():
        try:
            entries = get_store().fetch_all_entries()
        except StorageError as exc:
            app.logger.error("Error fetching entries: %s", exc)
            flash(str(exc), "error")
            entries = []
        app.logger.debug("Fetched entries count: %d", len(entries))
        return render_template("index.html", entries=entries)

    @app.route("/register", methods=["GET", "POST"])
    def register():
        if request.method == "POST":
            email = request.form.get("email", "").strip().lower()
            name = request.form.get("name", "").strip()
            password = request.form.get("password", "")

            error = None
            if not EMAIL_RE.fullmatch(email):
                error = "A valid email is required."
            elif not name:
                error = "Name is required."
            elif len(password) < MIN_PASSWORD_LENGTH:
                error = f"Password must be at least {MIN_PASSWORD_LENGTH} characters."
            elif get_user_by_email(email) is not None:
                error = "Email already registered."

            if error:
                flash(error, "error")
            else:
                g.db.execute(
                    "INSERT INTO users (email, name, password_hash, created_at) VALUES (?, ?, ?, ?)",
                    (email, name, generate_password_hash(password), utc_now()),
                )
                g.db.commit()
                flash("Registration successful. Please log in.", "success")
                return redirect(url_for("login"))

        return render_template("register.html")

    @app.route("/login", methods=["GET", "POST"])
    def login():
        if request.method == "POST":
            email = request.form.get("email", "").strip().lower()
            password = request.form.get("password", "")

            if not EMAIL_RE.fullmatch(email):
                flash("A valid email is required.", "error")
                return render_template("login.html", use_password=bool(password))

            user = get_user_by_email(email)
            if password:
                if user is None or not check_password_hash(user["password_hash"], password):
                    flash("Invalid email or password.", "error")
                    return render_template("login.html", use_password=True)
                sign_in(user["id"])
                flash("You've been signed in.", "success")
                return redirect(url_for("time_tracker"))

            if user is not None:
                token = create_login_token(user["id"], app.config["MAGIC_LINK_MAX_AGE"])
                link = url_for("auth_callback", token=token, _external=True)
                app.logger.info("Magic link for %s: %s", email, link)
            flash("Check your email. We sent you a login link.", "success")
            return redirect(url_for("login"))

        return render_template("login.html", use_password=False)

    @app.route("/auth/callback")
    def auth_callback():
        user_id = consume_login_token(request.args.get("token", ""))
        if user_id is None:
            flash("That login link is invalid or has expired.", "error")
            return redirect(url_for("login"))
        sign_in(user_id)
        return redirect(url_for("time_tracker"))

    @app.route("/logout")
    def logout():
        user_id = session.get("user_id")
        if user_id is not None:
            timer = app.extensions["timers"].pop(user_id, None)
            if timer is not None:
                timer.cancel()
        session.clear()
        return redirect(url_for("index"))

    @app.route("/time-tracker")
    def time_tracker():
        if g.user is None:
            return redirect(url_for("index"))

        try:
            entries = get_store().fetch_entries(g.user["id"])
        except StorageError as exc:
            flash(str(exc), "error")
            entries = []
        timer = get_timer(g.user["id"])
        return render_template("tracker.html", user=g.user, entries=entries, timer=timer.status())

    @app.route("/entries/<int:entry_id>/delete", methods=["POST"])
    def delete_entry(entry_id: int):
        if g.user is None:
            return redirect(url_for("index"))

        try:
            get_store().delete_entry(entry_id, g.user["id"])
        except StorageError:
            flash("Failed to delete time entry", "error")
        else:
            flash("Entry deleted.", "success")
        return redirect(url_for("time_tracker"))

    @app.route("/api/entries", methods=["GET"])
    def api_entries():
        if g.user is None:
            return jsonify({"error": "Not authenticated"}), 401
        try:
            entries = get_store().fetch_entries(g.user["id"])
        except StorageError as exc:
            return jsonify({"error": str(exc)}), 500
        return jsonify(entries_payload(entries))

    @app.route("/api/entries/<int:entry_id>", methods=["DELETE"])
    def api_delete_entry(entry_id: int):
        if g.user is None:
            return jsonify({"error": "Not authenticated"}), 401

        store = get_store()
        try:
            deleted = store.delete_entry(entry_id, g.user["id"])
            entries = store.fetch_entries(g.user["id"])
        except StorageError:
            return jsonify({"error": "Failed to delete time entry"}), 500
        if not deleted:
            return jsonify({"error": "Entry not found"}), 404
        return jsonify(entries_payload(entries))

    @app.route("/api/timer", methods=["GET"])
    def api_timer_status():
        if g.user is None:
            return jsonify({"error": "Not authenticated"}), 401
        return jsonify(get_timer(g.user["id"]).status())

    @app.route("/api/timer/start", methods=["POST"])
    def api_timer_start():
        if g.user is None:
            return jsonify({"error": "Not authenticated"}), 401

        data = request.get_json(silent=True) or {}
        timer = get_timer(g.user["id"])
        try:
            timer.start(str(data.get("category", "")))
        except ValidationError as exc:
            return jsonify({"error": str(exc)}), 400
        except TimerStateError as exc:
            return jsonify({"error": str(exc)}), 409
        return jsonify(timer.status())

    @app.route("/api/timer/stop", methods=["POST"])
    def api_timer_stop():
        if g.user is None:
            return jsonify({"error": "Not authenticated"}), 401

        timer = get_timer(g.user["id"])
        try:
            entries = timer.stop(get_store())
        except TimerStateError as exc:
            return jsonify({"error": str(exc)}), 409
        except StorageError:
            app.logger.error("Error saving time entry for user %s", g.user["id"])
            return jsonify({"error": "Failed to save time entry"}), 500
        payload = entries_payload(entries)
        payload["timer"] = timer.status()
        return jsonify(payload)

    @app.route("/chart.png")
    def chart_png():
        if g.user is None:
            return jsonify({"error": "Not authenticated"}), 401
        try:
            entries = get_store().fetch_entries(g.user["id"])
        except StorageError:
            entries = []
        return chart_response(entries, parse_chart_width(request.args.get("width")), "mine")

    @app.route("/public/chart.png")
    def public_chart_png():
        try:
            entries = get_store().fetch_all_entries()
        except StorageError:
            entries = []
        return chart_response(entries, parse_chart_width(request.args.get("width")), "public")

    @app.route("/api/chart/hit", methods=["GET"])
    def api_chart_hit():
        view = request.args.get("view", "mine")
        if view not in CHART_STYLES:
            return jsonify({"error": "Unknown chart view"}), 400
        if view == "mine" and g.user is None:
            return jsonify({"error": "Not authenticated"}), 401

        try:
            x = float(request.args.get("x", ""))
            y = float(request.args.get("y", ""))
        except ValueError:
            return jsonify({"error": "Invalid position"}), 400
        width = parse_chart_width(request.args.get("width"))

        store = get_store()
        try:
            entries = store.fetch_entries(g.user["id"]) if view == "mine" else store.fetch_all_entries()
        except StorageError as exc:
            return jsonify({"error": str(exc)}), 500

        slices = layout_slices(aggregate_entries(entries))
        hit = slice_at(x, y, slices, width, CHART_STYLES[view].margin)
        if hit is None:
            return jsonify({"slice": None})
        return jsonify({"slice": asdict(hit), "tooltip": tooltip_text(hit)})


def entries_payload(entries: List[TimeEntry]) -> Dict[str, object]:
    return {
        "entries": [
            dict(asdict(entry), duration=format_time(entry.seconds), created=format_date_time(entry.created_at))
            for entry in entries
        ],
        "aggregated": [asdict(category) for category in aggregate_entries(entries)],
    }


def chart_response(entries: List[TimeEntry], width: int, view: str) -> Response:
    png = render_pie_chart(aggregate_entries(entries), width, CHART_STYLES[view])
    response = Response(png, mimetype="image/png")
    response.headers["Cache-Control"] = "no-store"
    return response


def parse_chart_width(raw: Optional[str]) -> int:
    try:
        width = int(raw) if raw else DEFAULT_CHART_WIDTH
    except ValueError:
        width = DEFAULT_CHART_WIDTH
    return max(MIN_CHART_WIDTH, min(width, MAX_CHART_WIDTH))


def get_user_by_email(email: str) -> Optional[sqlite3.Row]:
    return g.db.execute("SELECT * FROM users WHERE email = ?", (email,)).fetchone()


def sign_in(user_id: int) -> None:
    session.clear()
    session["user_id"] = user_id


def create_login_token(user_id: int, max_age: int) -> str:
    token = secrets.token_urlsafe(32)
    expires_at = datetime.now(timezone.utc) + timedelta(seconds=max_age)
    g.db.execute(
        "INSERT INTO login_tokens (token, user_id, expires_at) VALUES (?, ?, ?)",
        (token, user_id, expires_at.isoformat(timespec="seconds")),
    )
    g.db.commit()
    return token


def consume_login_token(token: str) -> Optional[int]:
    """Return the user the link belongs to; each token works once."""
    if not token:
        return None
    row = g.db.execute("SELECT user_id, expires_at FROM login_tokens WHERE token = ?", (token,)).fetchone()
    if row is None:
        return None
    g.db.execute("DELETE FROM login_tokens WHERE token = ?", (token,))
    g.db.commit()
    if datetime.fromisoformat(row["expires_at"]) <= datetime.now(timezone.utc):
        return None
    return row["user_id"]


if __name__ == "__main__":
    application = create_app()
    application.run(debug=True, host="0.0.0.0", port=5001)
