"""Device tier policy for the viewer grid.

ฟังก์ชันในไฟล์นี้เป็น pure function ทั้งหมด เรียกซ้ำได้ทุก request/ทุก tick
โดยไม่มี state ภายใน
"""

from __future__ import annotations

import re
from typing import Any, Iterable, Mapping

TIERS = ("low", "medium", "high")
DEFAULT_TIER = "medium"

_PAUSE_DELAY_MS: dict[str, int] = {
    "low": 3000,  # เครื่องสเปกต่ำ หยุดสตรีมเร็วเพื่อคืน CPU
    "medium": 5000,
    "high": 8000,
}

_MAX_CONCURRENT_STREAMS: dict[str, int] = {
    "low": 2,
    "medium": 3,
    "high": 3,
}

_DEFAULT_RAM_GB = 4.0
_DEFAULT_CPU_CORES = 4

_MOBILE_UA = re.compile(
    r"Android|iPhone|iPad|iPod|webOS|BlackBerry|IEMobile|Opera Mini", re.IGNORECASE
)

ANIMATION_MAPPINGS: dict[str, dict[str, str]] = {
    "spin": {"animated": "animate-spin", "static": ""},
    "pulse": {"animated": "animate-pulse", "static": "opacity-75"},
    "bounce": {"animated": "animate-bounce", "static": ""},
    "ping": {"animated": "animate-ping", "static": ""},
    "shimmer": {"animated": "animate-[shimmer_2s_infinite]", "static": ""},
}


def normalize_tier(tier: Any) -> str:
    if isinstance(tier, str):
        value = tier.strip().lower()
        if value in TIERS:
            return value
    return DEFAULT_TIER


def pause_delay_for_tier(tier: str) -> int:
    """Grace period (ms) before an off-screen stream is paused."""
    return _PAUSE_DELAY_MS[normalize_tier(tier)]


def max_concurrent_streams(tier: str) -> int:
    if isinstance(tier, str) and tier.strip().lower() in _MAX_CONCURRENT_STREAMS:
        return _MAX_CONCURRENT_STREAMS[tier.strip().lower()]
    return _MAX_CONCURRENT_STREAMS["low"]


# =========================
# Animation helpers
# =========================
def should_disable_animations(tier: str, force_disable: bool = False) -> bool:
    if force_disable:
        return True
    return normalize_tier(tier) == "low"


def animation_class(cls: str, tier: str, force_disable: bool = False) -> str:
    return "" if should_disable_animations(tier, force_disable) else cls


def animation_classes(
    classes: Iterable[str], tier: str, force_disable: bool = False
) -> str:
    if should_disable_animations(tier, force_disable):
        return ""
    return " ".join(classes)


def loading_indicator_class(
    animated_class: str,
    static_class: str = "",
    tier: str = DEFAULT_TIER,
    force_disable: bool = False,
) -> str:
    """คืน class แบบนิ่งแทน spinner บนเครื่อง low tier"""
    if should_disable_animations(tier, force_disable):
        return static_class
    return animated_class


def adaptive_animation_class(
    animation_type: str, tier: str, force_disable: bool = False
) -> str:
    mapping = ANIMATION_MAPPINGS.get(animation_type)
    if mapping is None:
        return ""
    if should_disable_animations(tier, force_disable):
        return mapping["static"]
    return mapping["animated"]


def animation_config(tier: str, force_disable: bool = False) -> dict[str, Any]:
    disabled = should_disable_animations(tier, force_disable)
    config: dict[str, Any] = {"disable_animations": disabled}
    for name, mapping in ANIMATION_MAPPINGS.items():
        config[name] = mapping["static"] if disabled else mapping["animated"]
    return config


# =========================
# Tier detection
# =========================
def detect_device_tier(
    ram_gb: float | None = None,
    cpu_cores: int | None = None,
    is_mobile: bool | None = None,
) -> str:
    """Classify a client from its memory, core count and form factor.

    low:  RAM <= 2 GB, or <= 2 cores, or a mobile device with RAM <= 3 GB
    high: RAM > 4 GB and more than 4 cores
    everything else is medium. Unknown values assume 4 GB / 4 cores / desktop.
    """
    ram = _DEFAULT_RAM_GB if ram_gb is None else ram_gb
    cores = _DEFAULT_CPU_CORES if cpu_cores is None else cpu_cores
    mobile = bool(is_mobile)

    if ram <= 2 or cores <= 2 or (mobile and ram <= 3):
        return "low"
    if ram > 4 and cores > 4:
        return "high"
    return "medium"


def _to_float(value: Any) -> float | None:
    if value is None or isinstance(value, bool):
        return None
    try:
        result = float(value)
    except (TypeError, ValueError):
        return None
    return result if result > 0 else None


def _to_int(value: Any) -> int | None:
    number = _to_float(value)
    return int(number) if number is not None else None


def _to_bool(value: Any) -> bool | None:
    if value is None:
        return None
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return value != 0
    if isinstance(value, str):
        text = value.strip().lower()
        if text in {"1", "true", "yes", "y", "on", "?1"}:
            return True
        if text in {"0", "false", "no", "n", "off", "?0"}:
            return False
    return None


def tier_from_client_hints(
    headers: Mapping[str, str] | None = None,
    overrides: Mapping[str, Any] | None = None,
) -> str:
    """Resolve a tier for a browser request.

    An explicit ``tier`` in *overrides* wins. Otherwise ``ram``/``cores``/
    ``mobile`` from *overrides* (what the page read from ``navigator``) are
    combined with the ``Device-Memory`` and ``Sec-CH-UA-Mobile`` client hints
    and the User-Agent.
    """
    overrides = overrides or {}
    explicit = overrides.get("tier")
    if isinstance(explicit, str) and explicit.strip().lower() in TIERS:
        return explicit.strip().lower()

    headers = headers or {}
    ram = _to_float(overrides.get("ram"))
    if ram is None:
        ram = _to_float(headers.get("Device-Memory"))
    cores = _to_int(overrides.get("cores"))
    mobile = _to_bool(overrides.get("mobile"))
    if mobile is None:
        mobile = _to_bool(headers.get("Sec-CH-UA-Mobile"))
    if mobile is None:
        user_agent = headers.get("User-Agent") or ""
        mobile = bool(_MOBILE_UA.search(user_agent))
    return detect_device_tier(ram, cores, mobile)
