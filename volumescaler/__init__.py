"""VolumeScaler: node-local PVC autoscaling controller."""

__version__ = "0.1.0"
