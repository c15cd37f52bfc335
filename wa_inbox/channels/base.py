"""Base abstractions for provider webhook adapters."""

from __future__ import annotations

from abc import ABC, abstractmethod
from collections.abc import Iterable, Mapping

from ..campaigns.models import StatusCallback
from ..conversations.models import InboundMessage


class ChannelAdapter(ABC):
    """Abstract base class encapsulating provider-specific webhook parsing."""

    #: Lowercase channel identifier used in routes and logs.
    channel_name: str

    @abstractmethod
    def parse_incoming(self, payload: Mapping[str, str]) -> Iterable[InboundMessage]:
        """Convert an inbound-message webhook payload into messages."""

    @abstractmethod
    def parse_status(self, payload: Mapping[str, str]) -> StatusCallback | None:
        """Convert a delivery-status webhook payload; ``None`` when it carries none."""

    def verify_signature(
        self,
        url: str,
        params: Mapping[str, str],
        headers: Mapping[str, str],
    ) -> bool:
        """Validate authenticity of the webhook payload.

        Adapters can override this to implement signature checks. The default
        implementation returns ``True``.
        """

        return True
