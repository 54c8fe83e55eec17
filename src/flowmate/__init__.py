"""FlowMate: chat assistant that dispatches isolated agent workers."""

__version__ = "0.3.0"
