"""Runtime settings read from environment variables.

Every tunable of the orchestration core lives here so the research TTL and
the auto-analysis cadence can be changed without touching code.
"""
import os
from dataclasses import dataclass
from typing import Optional


def _env_int(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return int(raw)
    except ValueError:
        return default


def _env_float(name: str, default: float) -> float:
    raw = os.environ.get(name)
    if raw is None or raw.strip() == '':
        return default
    try:
        return float(raw)
    except ValueError:
        return default


DEFAULT_STATE_DB = os.path.expanduser('~/.consultdesk/state.db')


@dataclass
class Settings:
    service_url: str = 'http://localhost:3000'
    state_db: str = DEFAULT_STATE_DB
    http_timeout: float = 30.0
    research_ttl_ms: int = 30_000
    auto_analysis_base_interval_ms: int = 15_000
    analysis_context_window: int = 5
    max_auto_analyses: int = 20
    voice_max_seconds: float = 10.0
    lead_research_provider: str = 'google'
    enable_device_capture: bool = False
    # ms; webcam and screen share the same cadence unless overridden
    webcam_base_interval_ms: Optional[int] = None

    @classmethod
    def from_env(cls) -> 'Settings':
        """Build settings from the process environment (read at call time so tests can monkeypatch)."""
        return cls(
            service_url=os.environ.get('CONSULTDESK_SERVICE_URL', 'http://localhost:3000').rstrip('/'),
            state_db=os.environ.get('CONSULTDESK_STATE_DB', DEFAULT_STATE_DB),
            http_timeout=_env_float('CONSULTDESK_HTTP_TIMEOUT', 30.0),
            research_ttl_ms=_env_int('RESEARCH_TRIGGER_TTL_MS', 30_000),
            auto_analysis_base_interval_ms=_env_int('AUTO_ANALYSIS_BASE_INTERVAL_MS', 15_000),
            analysis_context_window=_env_int('ANALYSIS_CONTEXT_WINDOW', 5),
            max_auto_analyses=_env_int('MAX_AUTO_ANALYSES', 20),
            voice_max_seconds=_env_float('VOICE_MAX_SECONDS', 10.0),
            lead_research_provider=os.environ.get('LEAD_RESEARCH_PROVIDER', 'google'),
            enable_device_capture=os.environ.get('ENABLE_DEVICE_CAPTURE', '0') == '1',
            webcam_base_interval_ms=_env_int('WEBCAM_BASE_INTERVAL_MS', 0) or None,
        )

    def interval_base_for(self, widget_type: str) -> int:
        if widget_type == 'webcam' and self.webcam_base_interval_ms:
            return self.webcam_base_interval_ms
        return self.auto_analysis_base_interval_ms
