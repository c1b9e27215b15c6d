from .step import agent_step

__all__ = ["agent_step"]
