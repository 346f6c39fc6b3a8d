"""ClassifyX: image classification inference for TFLite models."""

__version__ = "0.1.0"
