"""Test/live mode context.

Exactly one of two credential sets is active per process. Each switch builds
a new immutable ``ModeContext`` and swaps a single reference, so a reader
always sees a matched mode name and credential set.
"""

import enum
import logging
import threading
from typing import Dict, Optional, Union

from pydantic import BaseModel, Field

from .errors import InvalidModeError

logger = logging.getLogger(__name__)

SECRET_KEY_KINDS = frozenset({"sk_test", "sk_live", "rk_test", "rk_live"})


class ModeName(str, enum.Enum):
    """Credential scopes offered by the provider."""
    TEST = "test"
    LIVE = "live"


class ModeCredentials(BaseModel):
    """Keys belonging to one mode."""
    secret_key: str = Field(default="", description="Server-side secret API key")
    publishable_key: str = Field(default="", description="Key handed to the checkout widget")
    webhook_secret: str = Field(default="", description="Shared secret for webhook signatures")

    class Config:
        frozen = True

    @property
    def key_kind(self) -> str:
        """Type tag of the secret key, e.g. ``sk_live``. Safe for logs."""
        if not self.secret_key:
            return "missing"
        parts = self.secret_key.split("_", 2)
        kind = "_".join(parts[:2])
        if kind in SECRET_KEY_KINDS and len(parts) == 3 and parts[2]:
            return kind
        return "unrecognised"


class ModeContext(BaseModel):
    """Immutable pairing of a mode name with its credentials."""
    name: ModeName
    credentials: ModeCredentials = Field(default_factory=ModeCredentials)

    class Config:
        frozen = True

    @property
    def is_live(self) -> bool:
        return self.name == ModeName.LIVE

    @property
    def has_credentials(self) -> bool:
        return bool(self.credentials.secret_key)


class ActiveModeInfo(BaseModel):
    """Read-only view of the active mode."""
    name: ModeName
    is_live_mode: bool
    has_credentials: bool
    publishable_key_available: bool


def parse_mode_name(name: Union[str, ModeName]) -> ModeName:
    """Convert ``name`` to a ``ModeName`` or raise ``InvalidModeError``."""
    if isinstance(name, ModeName):
        return name
    try:
        return ModeName(name)
    except ValueError:
        raise InvalidModeError(name) from None


class ModeState:
    """Holder of the process-wide active mode.

    Example:
        modes = ModeState({ModeName.TEST: ModeCredentials(secret_key="sk_test_...")})
        context = modes.active
        modes.switch_mode("live")
    """

    def __init__(
        self,
        credentials: Optional[Dict[ModeName, ModeCredentials]] = None,
        initial: Union[str, ModeName] = ModeName.TEST,
    ):
        credentials = credentials or {}
        self._contexts: Dict[ModeName, ModeContext] = {
            mode: ModeContext(name=mode, credentials=credentials.get(mode, ModeCredentials()))
            for mode in ModeName
        }
        self._switch_lock = threading.Lock()
        self._active: ModeContext = self._contexts[parse_mode_name(initial)]

    @property
    def active(self) -> ModeContext:
        """The active context. A single reference read, never half-switched."""
        return self._active

    def get_active_mode(self) -> ActiveModeInfo:
        """Describe the active mode. Never raises."""
        context = self._active
        return ActiveModeInfo(
            name=context.name,
            is_live_mode=context.is_live,
            has_credentials=context.has_credentials,
            publishable_key_available=bool(context.credentials.publishable_key),
        )

    def switch_mode(self, name: Union[str, ModeName]) -> ModeContext:
        """Make ``name`` the active mode. Switching to the active mode is a no-op."""
        mode = parse_mode_name(name)
        with self._switch_lock:
            if self._active.name == mode:
                return self._active
            context = self._contexts[mode]
            self._active = context
        logger.info(
            f"Switched to {mode.value.upper()} mode "
            f"(secret key {context.credentials.key_kind})"
        )
        return context

    def context_for(
        self,
        mode: Union[str, ModeName, None] = None,
        is_live: Optional[bool] = None,
    ) -> ModeContext:
        """Context of a specific mode, by name or by live flag."""
        if mode is None:
            if is_live is None:
                raise ValueError("Either mode or is_live must be given")
            mode = ModeName.LIVE if is_live else ModeName.TEST
        return self._contexts[parse_mode_name(mode)]

    def webhook_secrets(self) -> Dict[ModeName, str]:
        """Configured webhook secrets, active mode first."""
        active = self._active
        ordered = [active] + [c for c in self._contexts.values() if c.name != active.name]
        return {
            context.name: context.credentials.webhook_secret
            for context in ordered
            if context.credentials.webhook_secret
        }
