"""PlannerAI REST SDK."""

from plannerai.sdk.client import PlannerClient

__all__ = ["PlannerClient"]
