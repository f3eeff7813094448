from flask_sqlalchemy import SQLAlchemy
from werkzeug.security import check_password_hash, generate_password_hash

from chant_session import DEFAULT_CHANT_TEXT, DEFAULT_LANGUAGE, DEFAULT_SPEED, DEFAULT_VOICE_ID
from tally import MALA_SIZE

db = SQLAlchemy()


class User(db.Model):
    __tablename__ = "user"

    id = db.Column(db.Integer, primary_key=True)
    username = db.Column(db.String(80), unique=True, nullable=False)
    password_hash = db.Column(db.String(255), nullable=False)

    # Counter document: merge-written by the chanting client
    count      = db.Column(db.Integer, default=0, nullable=False)
    mala_count = db.Column(db.Integer, default=0, nullable=False)

    # Saved chanting preferences
    chant_text   = db.Column(db.String(255), default=DEFAULT_CHANT_TEXT, nullable=False)
    speed_factor = db.Column(db.Integer, default=DEFAULT_SPEED, nullable=False)
    voice_name   = db.Column(db.String(80), default=DEFAULT_VOICE_ID, nullable=True)
    voice_lang   = db.Column(db.String(20), default=DEFAULT_LANGUAGE, nullable=False)
    clip_path    = db.Column(db.String(255), nullable=True)  # relative to the clips dir

    sessions = db.relationship("JaapSession", backref="user", lazy=True, cascade="all, delete-orphan")
    daily_stats = db.relationship("DailyStat", backref="user", lazy=True, cascade="all, delete-orphan")

    def set_password(self, plaintext: str):
        self.password_hash = generate_password_hash(plaintext)

    def check_password(self, plaintext: str) -> bool:
        return check_password_hash(self.password_hash, plaintext)

    @property
    def total_japa(self):
        return (self.mala_count or 0) * MALA_SIZE + (self.count or 0)

    def counter_dict(self):
        return {"count": self.count, "malaCount": self.mala_count, "totalJapa": self.total_japa}

    def __repr__(self):
        return f"<User {self.username}>"


class DailyStat(db.Model):
    __tablename__ = "daily_stat"
    __table_args__ = (db.UniqueConstraint("user_id", "day", name="uq_daily_stat_user_day"),)

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    day = db.Column(db.String(10), nullable=False)  # YYYY-MM-DD
    chant_count = db.Column(db.Integer, default=0, nullable=False)
    mala_count  = db.Column(db.Integer, default=0, nullable=False)

    def to_dict(self):
        return {"date": self.day, "chantCount": self.chant_count, "malaCount": self.mala_count}

    def __repr__(self):
        return f"<DailyStat {self.day} chants={self.chant_count} malas={self.mala_count}>"


class JaapSession(db.Model):
    __tablename__ = "jaap_session"

    id = db.Column(db.Integer, primary_key=True)
    user_id = db.Column(db.Integer, db.ForeignKey("user.id"), nullable=False)
    start_time = db.Column(db.DateTime, nullable=False)
    end_time = db.Column(db.DateTime, nullable=False)
    total_count = db.Column(db.Integer, default=0, nullable=False)
    mala_count = db.Column(db.Integer, default=0, nullable=False)
    chant_text = db.Column(db.String(255), nullable=False, default="")

    @property
    def duration_seconds(self):
        return max(0, int((self.end_time - self.start_time).total_seconds()))

    def to_dict(self):
        return {
            "id": self.id,
            "startTime": self.start_time.isoformat(),
            "endTime": self.end_time.isoformat(),
            "totalCount": self.total_count,
            "malaCount": self.mala_count,
            "chantText": self.chant_text,
            "durationSeconds": self.duration_seconds,
        }

    def __repr__(self):
        return f"<JaapSession {self.start_time:%Y-%m-%d %H:%M} {self.total_count} japa>"
