"""Node-side vGPU monitoring: shared-region access, container scanning, metrics export and priority feedback."""

__version__ = "0.0.1"