"""
Flow Core - deterministic guardrails and orchestration for conversational onboarding flows
"""

__version__ = "1.0.0"
