"""
Upstream completion backends for Heartline.
One CompletionBackend, two delta-source shapes (single-shot, incremental SSE).
"""
from heartline.backends.base import DeltaSource, StreamDelta, END
from heartline.backends.openai_compat import CompletionBackend, SingleShotSource, SSEStreamSource
from heartline.backends.catalog import MODELS, recommended_model, resolve_model

__all__ = [
    "DeltaSource",
    "StreamDelta",
    "END",
    "CompletionBackend",
    "SingleShotSource",
    "SSEStreamSource",
    "MODELS",
    "recommended_model",
    "resolve_model",
]
