import os
from dataclasses import dataclass

from dotenv import load_dotenv

load_dotenv()


def _env_float(name: str, default: float) -> float:
    try:
        return float(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


def _env_int(name: str, default: int) -> int:
    try:
        return int(os.getenv(name, default))
    except (TypeError, ValueError):
        return default


# Audio contract with the browser client: raw PCM16, mono, 24 kHz.
SAMPLE_RATE = 24000

DATABASE_URL = os.getenv("DATABASE_URL", "sqlite+aiosqlite:///./interviews.db")
FRONTEND_URL = os.getenv("FRONTEND_URL", "http://localhost:3000")

MAX_CONCURRENT_SESSIONS = _env_int("MAX_CONCURRENT_SESSIONS", 20)
UPSTREAM_MODE = os.getenv("UPSTREAM_MODE", "pipeline").strip().lower()


@dataclass
class TimingPolicy:
    """Every empirical timing/threshold value the interview sessions use.

    Times are in seconds. Defaults come from tuning sessions, they carry no
    deeper meaning and can be overridden through the environment.
    """
    small_talk_pause_s: float = 2.0
    bridge_pause_s: float = 0.8
    question_time_floor_s: float = 180.0
    silence_nudge_s: float = 20.0
    silence_final_s: float = 25.0
    hold_grace_s: float = 60.0
    overrun_grace_s: float = 120.0
    closing_grace_s: float = 5.0
    socket_close_delay_s: float = 1.0
    greeting_delay_s: float = 0.25
    time_check_interval_s: float = 15.0
    time_warnings_min: tuple = (15, 10, 5, 3, 1)
    no_speech_threshold: float = 0.6
    backchannel_max_words: int = 3
    handshake_timeout_s: float = 10.0
    text_timeout_s: float = 15.0

    @classmethod
    def from_env(cls) -> "TimingPolicy":
        return cls(
            small_talk_pause_s=_env_float("SMALL_TALK_PAUSE_S", 2.0),
            bridge_pause_s=_env_float("BRIDGE_PAUSE_S", 0.8),
            question_time_floor_s=_env_float("QUESTION_TIME_FLOOR_S", 180.0),
            silence_nudge_s=_env_float("SILENCE_NUDGE_S", 20.0),
            silence_final_s=_env_float("SILENCE_FINAL_S", 25.0),
            hold_grace_s=_env_float("HOLD_GRACE_S", 60.0),
            overrun_grace_s=_env_float("OVERRUN_GRACE_S", 120.0),
            closing_grace_s=_env_float("CLOSING_GRACE_S", 5.0),
            socket_close_delay_s=_env_float("SOCKET_CLOSE_DELAY_S", 1.0),
            greeting_delay_s=_env_float("GREETING_DELAY_S", 0.25),
            time_check_interval_s=_env_float("TIME_CHECK_INTERVAL_S", 15.0),
            no_speech_threshold=_env_float("NO_SPEECH_THRESHOLD", 0.6),
            backchannel_max_words=_env_int("BACKCHANNEL_MAX_WORDS", 3),
            handshake_timeout_s=_env_float("HANDSHAKE_TIMEOUT_S", 10.0),
            text_timeout_s=_env_float("TEXT_TIMEOUT_S", 15.0),
        )
