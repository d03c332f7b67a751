"""Pipeline stages: recognition, explanation and illustration."""

from .explainer import ExplanationGenerator, NotConfiguredError
from .illustrator import NoopImageGenerator, illustrate_result
from .recognizer import ProblemRecognizer, RecognitionFailedError

__all__ = [
    "ExplanationGenerator",
    "NotConfiguredError",
    "NoopImageGenerator",
    "illustrate_result",
    "ProblemRecognizer",
    "RecognitionFailedError",
]
