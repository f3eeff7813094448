import os
import logging
from functools import wraps
from datetime import date, timedelta, datetime, timezone

from dotenv import load_dotenv
from flask import Flask, jsonify, request, session, send_from_directory, url_for
from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from werkzeug.utils import secure_filename

import services
from chant_session import FALLBACK_CHANT_TEXT, clamp_speed
from default_chants import DEFAULT_CHANTS, display_text
from models import db, User, DailyStat, JaapSession
from tally import MALA_SIZE, TallyState

load_dotenv()

logging.basicConfig(
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    level=os.getenv("LOG_LEVEL", "INFO").upper(),
)
logger = logging.getLogger(__name__)

# ── Timezone offset ───────────────────────────────────────────────────────────
# Daily stats are keyed by the calendar day at this offset from UTC.
TZ_OFFSET_HOURS = float(os.environ.get("TZ_OFFSET_HOURS", "0"))

def today_local() -> date:
    """Return the current date in the configured local timezone (default UTC)."""
    return (datetime.now(timezone.utc) + timedelta(hours=TZ_OFFSET_HOURS)).date()

basedir = os.path.abspath(os.path.dirname(__file__))

app = Flask(__name__)
app.config["SECRET_KEY"] = os.environ.get("SECRET_KEY", "dev-secret-key-change-in-production")
app.config["SQLALCHEMY_DATABASE_URI"] = os.environ.get(
    "DATABASE_URL",
    "sqlite:///" + os.path.join(basedir, "naam_jaap.db"),
)
app.config["SQLALCHEMY_TRACK_MODIFICATIONS"] = False
app.config["CLIPS_DIR"] = os.environ.get("CLIPS_DIR", os.path.join(basedir, "static", "clips"))
app.config["MAX_CONTENT_LENGTH"] = 20 * 1024 * 1024

db.init_app(app)

MIN_STYLE_LENGTH = 5


# ── Helpers ───────────────────────────────────────────────────────────────────

def current_user():
    """Return the logged-in User object, or None."""
    uid = session.get("user_id")
    if uid is None:
        return None
    return db.session.get(User, uid)


def login_required(f):
    @wraps(f)
    def decorated(*args, **kwargs):
        if current_user() is None:
            return jsonify({"ok": False, "error": "Please log in to continue."}), 401
        return f(*args, **kwargs)
    return decorated


def request_data():
    return request.get_json(force=True, silent=True) or request.form.to_dict()


def parse_day(value):
    """Validate a YYYY-MM-DD string; returns it normalised or None."""
    try:
        return date.fromisoformat(value).isoformat()
    except (TypeError, ValueError):
        return None


def parse_timestamp(value):
    """ISO-8601 → naive UTC datetime."""
    dt = datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    if dt.tzinfo is not None:
        dt = dt.astimezone(timezone.utc).replace(tzinfo=None)
    return dt


def increment_daily_stat(user, day, chants=1, malas=0):
    """Add to the per-day aggregate, creating the row on first use.

    The update is a single SQL statement so two clients chanting at once
    cannot lose each other's increments.
    """
    stmt = (
        update(DailyStat)
        .where(DailyStat.user_id == user.id, DailyStat.day == day)
        .values(chant_count=DailyStat.chant_count + chants,
                mala_count=DailyStat.mala_count + malas)
    )
    if db.session.execute(stmt).rowcount:
        db.session.commit()
        return
    db.session.add(DailyStat(user_id=user.id, day=day, chant_count=chants, mala_count=malas))
    try:
        db.session.commit()
    except IntegrityError:
        # another writer created the row first
        db.session.rollback()
        db.session.execute(stmt)
        db.session.commit()


def todays_japa(user):
    stat = DailyStat.query.filter_by(user_id=user.id, day=today_local().isoformat()).first()
    return stat.chant_count if stat else 0


def preferences_dict(user):
    return {
        "chantText": user.chant_text,
        "displayText": display_text(user.chant_text),
        "speedFactor": user.speed_factor,
        "voiceName": user.voice_name,
        "voiceLang": user.voice_lang,
        "audioKind": "clip" if user.clip_path else "speech",
        "clipUrl": url_for("clip_file", filename=user.clip_path) if user.clip_path else None,
    }


# ── Auth routes ───────────────────────────────────────────────────────────────

@app.route("/api/login", methods=["POST"])
def login():
    data = request_data()
    username = str(data.get("username", "")).strip()
    password = str(data.get("password", ""))
    user = User.query.filter_by(username=username).first()
    if user and user.check_password(password):
        session["user_id"] = user.id
        return jsonify({"ok": True, "username": user.username})
    return jsonify({"ok": False, "error": "Invalid username or password."}), 401


@app.route("/api/register", methods=["POST"])
def register():
    data = request_data()
    username = str(data.get("username", "")).strip()
    password = str(data.get("password", ""))
    if not username or not password:
        return jsonify({"ok": False, "error": "Username and password are required."}), 400
    if User.query.filter_by(username=username).first():
        return jsonify({"ok": False, "error": "That username is already taken."}), 400
    u = User(username=username)
    u.set_password(password)
    db.session.add(u)
    db.session.commit()
    session["user_id"] = u.id
    return jsonify({"ok": True, "username": u.username}), 201


@app.route("/api/logout", methods=["POST"])
def logout():
    session.pop("user_id", None)
    return jsonify({"ok": True})


# ── Counter ───────────────────────────────────────────────────────────────────

@app.route("/api/counter", methods=["GET"])
@login_required
def get_counter():
    user = current_user()
    return jsonify({**user.counter_dict(), "todaysJapa": todays_japa(user)})


@app.route("/api/counter", methods=["PUT"])
@login_required
def put_counter():
    """Merge-write of the counter document; absent fields are left alone."""
    user = current_user()
    data = request.get_json(force=True, silent=True) or {}
    try:
        if "count" in data:
            count = int(data["count"])
            if not 0 <= count < MALA_SIZE:
                raise ValueError("count out of range")
            user.count = count
        if "malaCount" in data:
            malas = int(data["malaCount"])
            if malas < 0:
                raise ValueError("malaCount cannot be negative")
            user.mala_count = malas
    except (TypeError, ValueError) as exc:
        db.session.rollback()
        return jsonify({"ok": False, "error": str(exc)}), 400
    db.session.commit()
    return jsonify({"ok": True, **user.counter_dict()})


@app.route("/api/tap", methods=["POST"])
@login_required
def tap():
    """One manual japa for clients that keep no local tally."""
    user = current_user()
    before = TallyState(user.count, user.mala_count)
    after = before.incremented()
    user.count, user.mala_count = after.count, after.mala_count
    db.session.commit()
    completed = after.mala_count > before.mala_count
    increment_daily_stat(user, today_local().isoformat(), chants=1, malas=1 if completed else 0)
    return jsonify({**user.counter_dict(), "todaysJapa": todays_japa(user), "malaCompleted": completed})


# ── Daily stats ───────────────────────────────────────────────────────────────

@app.route("/api/daily_stats", methods=["GET"])
@login_required
def daily_stats():
    user = current_user()
    stats = DailyStat.query.filter_by(user_id=user.id).order_by(DailyStat.day.desc()).all()
    return jsonify({
        "stats": [s.to_dict() for s in stats],
        "totalMalas": sum(s.mala_count for s in stats),
        "totalChants": sum(s.chant_count for s in stats),
    })


@app.route("/api/daily_stats/increment", methods=["POST"])
@login_required
def increment_today():
    """Increment today's stat, where today is the same day /api/counter reports."""
    return apply_daily_increment(today_local().isoformat())


@app.route("/api/daily_stats/<day>/increment", methods=["POST"])
@login_required
def increment_daily(day):
    day = parse_day(day)
    if day is None:
        return jsonify({"ok": False, "error": "invalid date"}), 400
    return apply_daily_increment(day)


def apply_daily_increment(day):
    user = current_user()
    data = request.get_json(force=True, silent=True) or {}
    try:
        chants = int(data.get("chants", 1))
        malas = int(data.get("malas", 0))
    except (TypeError, ValueError):
        return jsonify({"ok": False, "error": "invalid amounts"}), 400
    if chants < 0 or malas < 0:
        return jsonify({"ok": False, "error": "amounts cannot be negative"}), 400
    increment_daily_stat(user, day, chants=chants, malas=malas)
    stat = DailyStat.query.filter_by(user_id=user.id, day=day).first()
    return jsonify({"ok": True, **stat.to_dict()})


# ── Session history ───────────────────────────────────────────────────────────

@app.route("/api/sessions", methods=["GET"])
@login_required
def sessions():
    user = current_user()
    all_sessions = (
        JaapSession.query
        .filter_by(user_id=user.id)
        .order_by(JaapSession.start_time.desc(), JaapSession.id.desc())
        .all()
    )
    days = []
    for s in all_sessions:
        label = f"{s.start_time:%B} {s.start_time.day}, {s.start_time.year}"
        if not days or days[-1]["date"] != label:
            days.append({"date": label, "sessions": []})
        days[-1]["sessions"].append(s.to_dict())
    return jsonify({"days": days})


@app.route("/api/sessions", methods=["POST"])
@login_required
def append_session():
    user = current_user()
    data = request.get_json(force=True, silent=True)
    if not data:
        return jsonify({"error": "No data provided"}), 400
    try:
        start = parse_timestamp(data["startTime"])
        end = parse_timestamp(data["endTime"])
        total = max(0, int(data.get("totalCount", 0)))
        malas = max(0, int(data.get("malaCount", 0)))
    except (KeyError, TypeError, ValueError) as exc:
        return jsonify({"ok": False, "error": f"invalid session: {exc}"}), 400
    if end < start:
        return jsonify({"ok": False, "error": "endTime is before startTime"}), 400
    record = JaapSession(user_id=user.id, start_time=start, end_time=end,
                         total_count=total, mala_count=malas,
                         chant_text=str(data.get("chantText", ""))[:255])
    db.session.add(record)
    db.session.commit()
    return jsonify({"success": True, "session": record.to_dict()}), 201


@app.route("/api/sessions/<int:session_id>/delete", methods=["POST"])
@login_required
def delete_session(session_id):
    user = current_user()
    record = JaapSession.query.filter_by(id=session_id, user_id=user.id).first()
    if not record:
        return jsonify({"error": "Session not found"}), 404
    db.session.delete(record)
    db.session.commit()
    return jsonify({"success": True})


# ── Preferences and chants ────────────────────────────────────────────────────

@app.route("/api/chants")
def chants():
    items = []
    for c in DEFAULT_CHANTS:
        item = c.to_dict()
        item["displayText"] = display_text(c.text)
        item["audioUrl"] = url_for("static", filename=f"audio/{c.audio_file}") if c.audio_file else None
        items.append(item)
    return jsonify({"chants": items})


@app.route("/api/preferences", methods=["GET"])
@login_required
def get_preferences():
    return jsonify(preferences_dict(current_user()))


@app.route("/api/preferences", methods=["POST"])
@login_required
def save_preferences():
    """Save the user's chant text, speed and voice for their next session."""
    user = current_user()
    data = request.get_json(force=True, silent=True) or {}
    if "chantText" in data:
        text = str(data["chantText"]).strip()
        if not text:
            return jsonify({"ok": False, "error": "chant text cannot be empty"}), 400
        user.chant_text = text[:255]
    if "speedFactor" in data:
        try:
            user.speed_factor = clamp_speed(data["speedFactor"])
        except (TypeError, ValueError):
            return jsonify({"ok": False, "error": "invalid speed"}), 400
    if "voiceName" in data:
        user.voice_name = str(data["voiceName"]).strip() or None
    if "voiceLang" in data:
        user.voice_lang = str(data["voiceLang"]).strip() or user.voice_lang
    if data.get("audioKind") == "speech":
        user.clip_path = None
    db.session.commit()
    return jsonify({"ok": True, **preferences_dict(user)})


# ── Voice and audio ───────────────────────────────────────────────────────────

@app.route("/api/voice", methods=["POST"])
@login_required
def suggest_voice():
    user = current_user()
    data = request.get_json(force=True, silent=True) or {}
    style = str(data.get("desiredStyle", "")).strip()
    if len(style) < MIN_STYLE_LENGTH:
        return jsonify({"success": False,
                        "error": "Please describe the desired voice style in more detail."}), 400
    result = services.suggest_voice(style)
    if not result["success"]:
        return jsonify(result), 502
    config = result["data"]["voiceConfig"]
    user.voice_name = config["voiceName"]
    user.voice_lang = config["lang"]
    user.clip_path = None
    db.session.commit()
    return jsonify(result)


@app.route("/api/transcribe", methods=["POST"])
@login_required
def transcribe():
    data = request.get_json(force=True, silent=True) or {}
    uri = data.get("audioDataUri")
    if not uri:
        return jsonify({"success": False, "error": "No audio provided"}), 400
    result = services.transcribe(uri)
    if not result["success"]:
        return jsonify({**result, "chantText": FALLBACK_CHANT_TEXT}), 502
    return jsonify(result)


@app.route("/api/clips", methods=["POST"])
@login_required
def upload_clip():
    """Store an uploaded or recorded chant clip and transcribe it for the chant text."""
    user = current_user()
    audio_file = request.files.get("audio")
    if not audio_file or not audio_file.filename:
        return jsonify({"error": "No audio file"}), 400
    mimetype = audio_file.mimetype or ""
    if not mimetype.startswith("audio/"):
        return jsonify({"success": False, "error": "Please upload a valid audio file."}), 400

    raw = audio_file.read()
    clips_dir = app.config["CLIPS_DIR"]
    os.makedirs(clips_dir, exist_ok=True)
    filename = f"user_{user.id}_{secure_filename(audio_file.filename) or 'clip'}"
    with open(os.path.join(clips_dir, filename), "wb") as f:
        f.write(raw)
    user.clip_path = filename

    notice = None
    result = services.transcribe(services.to_data_uri(raw, mimetype))
    if result["success"]:
        user.chant_text = result["data"]["transcript"][:255]
    else:
        user.chant_text = FALLBACK_CHANT_TEXT
        notice = result["error"]
    db.session.commit()
    return jsonify({
        "success": True,
        "clipUrl": url_for("clip_file", filename=filename),
        "chantText": user.chant_text,
        "notice": notice,
    })


@app.route("/clips/<path:filename>")
@login_required
def clip_file(filename):
    # users only ever get their own current clip
    if filename != current_user().clip_path:
        return jsonify({"error": "Clip not found"}), 404
    return send_from_directory(app.config["CLIPS_DIR"], filename)


with app.app_context():
    db.create_all()
    os.makedirs(app.config["CLIPS_DIR"], exist_ok=True)

if __name__ == "__main__":
    app.run(debug=True)
