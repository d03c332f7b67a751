"""MathSteps: step-by-step explanations for photographed or typed math problems."""

__version__ = "0.1.0"
