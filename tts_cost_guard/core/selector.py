"""
TTS provider selection.

Decides which real provider (or none) serves a synthesis request from the
current flag state.

Decision Order (first match wins):
1. Manual override - An administrator pinned a provider
2. Hard cap - Daily spend ceiling reached, synthesis suspended
3. Circuit breaker - ElevenLabs tripped, traffic goes to the fallback
4. Preferred provider - No restriction applies

Selection fails open: if flags cannot be read the caller gets its preferred
provider back. ``resolve_provider`` keeps that decision visible as a
``SelectionResult``; ``select_provider`` collapses it.
"""

import logging
from dataclasses import dataclass, asdict
from typing import Any, Callable, Dict, Optional

from .errors import FlagReadError
from .flags import ELEVEN_DISABLED, HARD_CAP_REACHED, MANUAL_OVERRIDE, FlagStore
from tts_cost_guard.storage.models import SystemFlag

logger = logging.getLogger(__name__)

ELEVENLABS = "elevenlabs"
OPENAI = "openai"
DISABLED = "disabled"

SYNTH_PROVIDERS = (ELEVENLABS, OPENAI)

DEFAULT_FALLBACK_PROVIDER = OPENAI
DEFAULT_FALLBACK_VOICE = "shimmer"
DEFAULT_EMERGENCY_BITRATE = 24

MANUAL_OVERRIDE_REASON = "Manual override by administrator"
DEFAULT_HARD_CAP_REASON = "Daily cost cap reached"
DEFAULT_BREAKER_REASON = "ElevenLabs circuit breaker active"


@dataclass(frozen=True)
class ProviderConfig:
    """Provider decision for one request. Recomputed on every call."""
    provider: str
    voice: Optional[str] = None
    bitrate: Optional[int] = None
    reason: Optional[str] = None
    manual_override: Optional[bool] = None

    @property
    def disabled(self) -> bool:
        return self.provider == DISABLED

    def to_dict(self) -> Dict[str, Any]:
        """Serialize, leaving out fields that were not set."""
        return {k: v for k, v in asdict(self).items() if v is not None}


@dataclass(frozen=True)
class FallbackSettings:
    """Where ElevenLabs traffic goes while its breaker is tripped."""
    provider: str = DEFAULT_FALLBACK_PROVIDER
    voice: str = DEFAULT_FALLBACK_VOICE
    bitrate: int = DEFAULT_EMERGENCY_BITRATE


@dataclass(frozen=True)
class SelectionResult:
    """Outcome of a selection attempt before the fail-open collapse."""
    config: ProviderConfig
    error: Optional[Exception] = None

    @property
    def failed_open(self) -> bool:
        return self.error is not None


def _check_preferred(preferred: str) -> None:
    if preferred not in SYNTH_PROVIDERS:
        raise ValueError(f"preferred provider must be one of {SYNTH_PROVIDERS}, got {preferred!r}")


def load_fallback_settings(store: FlagStore) -> FallbackSettings:
    """Read fallback provider and emergency bitrate, defaulting anything missing.

    An unreadable config table yields the built-in defaults, so a tripped
    breaker still routes away from ElevenLabs.
    """
    try:
        configs = store.get_configs(["fallback_provider", "emergency_bitrate"])
    except FlagReadError as e:
        logger.error(f"Fallback config unreadable, using defaults: {e}")
        return FallbackSettings()
    fallback = configs["fallback_provider"]
    bitrate_config = configs["emergency_bitrate"]

    provider = fallback.get("provider") or DEFAULT_FALLBACK_PROVIDER
    if provider not in SYNTH_PROVIDERS:
        logger.warning(f"Unknown fallback provider {provider!r} in config, using {DEFAULT_FALLBACK_PROVIDER}")
        provider = DEFAULT_FALLBACK_PROVIDER

    voice = fallback.get("voice") or DEFAULT_FALLBACK_VOICE

    bitrate = bitrate_config.get("value") or DEFAULT_EMERGENCY_BITRATE
    if isinstance(bitrate, bool) or not isinstance(bitrate, (int, float)) or bitrate <= 0:
        logger.warning(f"Invalid emergency bitrate {bitrate!r} in config, using {DEFAULT_EMERGENCY_BITRATE}")
        bitrate = DEFAULT_EMERGENCY_BITRATE

    return FallbackSettings(provider=provider, voice=str(voice), bitrate=int(bitrate))


def evaluate_provider(
    flags: Dict[str, Dict[str, Any]],
    preferred: str,
    fallback_lookup: Callable[[], FallbackSettings],
) -> ProviderConfig:
    """Apply the decision order to already-loaded flag values.

    An override naming an unknown provider is ignored, and the hard cap and
    breaker still apply.

    Args:
        flags: Flag key -> flag value mapping (missing keys mean unset)
        preferred: Provider the caller wants
        fallback_lookup: Called only when the circuit breaker applies

    Returns:
        The provider decision
    """
    override = flags.get(MANUAL_OVERRIDE) or {}
    provider = override.get("provider") or preferred
    if override.get("enabled") and provider not in SYNTH_PROVIDERS:
        logger.warning(f"Ignoring manual override with unknown provider {provider!r}")
    elif override.get("enabled"):
        logger.info(f"Manual override active: {override}")
        return ProviderConfig(
            provider=provider,
            voice=override.get("voice"),
            bitrate=override.get("bitrate"),
            reason=MANUAL_OVERRIDE_REASON,
            manual_override=True,
        )

    hard_cap = flags.get(HARD_CAP_REACHED) or {}
    if hard_cap.get("disabled"):
        logger.warning("Hard cap reached - TTS disabled")
        return ProviderConfig(
            provider=DISABLED,
            reason=hard_cap.get("reason") or DEFAULT_HARD_CAP_REASON,
        )

    breaker = flags.get(ELEVEN_DISABLED) or {}
    if preferred == ELEVENLABS and breaker.get("disabled"):
        logger.warning("ElevenLabs disabled, using fallback")
        fallback = fallback_lookup()
        return ProviderConfig(
            provider=fallback.provider,
            voice=fallback.voice,
            bitrate=fallback.bitrate,
            reason=breaker.get("reason") or DEFAULT_BREAKER_REASON,
        )

    return ProviderConfig(provider=preferred)


def resolve_provider(store: FlagStore, preferred: str = ELEVENLABS) -> SelectionResult:
    """Select a provider, reporting rather than raising any failure.

    Raises:
        ValueError: If ``preferred`` is not a synthesis provider
    """
    _check_preferred(preferred)
    try:
        flags: Dict[str, SystemFlag] = store.get_flags()
        values = {key: store.flag_value(flags, key) for key in flags}
        config = evaluate_provider(values, preferred, lambda: load_fallback_settings(store))
        return SelectionResult(config=config)
    except Exception as e:
        return SelectionResult(config=ProviderConfig(provider=preferred), error=e)


def select_provider(store: FlagStore, preferred: str = ELEVENLABS) -> ProviderConfig:
    """Select the provider for one synthesis request. Never raises on lookup failures.

    Args:
        store: Flag store to consult
        preferred: Provider the caller wants ('elevenlabs' or 'openai')

    Returns:
        ProviderConfig; ``{"provider": preferred}`` when flags cannot be read
    """
    result = resolve_provider(store, preferred)
    if result.failed_open:
        logger.error(f"Provider selection failed, allowing {preferred}: {result.error}")
    return result.config
