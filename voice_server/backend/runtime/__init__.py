"""Runtime configuration and metrics for the voice application layer.

``ApplicationRuntime`` lives in ``voice_server.backend.runtime.runtime``; it is
not re-exported here because the application modules it wires import this
package for their configuration types.
"""

from .config import (
    ChatRuntimeConfig,
    PipelineRuntimeConfig,
    ServiceRuntimeConfig,
    TransportRuntimeConfig,
    VoiceRuntimeConfig,
)
from .metrics import Metrics

__all__ = [
    "ChatRuntimeConfig",
    "Metrics",
    "PipelineRuntimeConfig",
    "ServiceRuntimeConfig",
    "TransportRuntimeConfig",
    "VoiceRuntimeConfig",
]
