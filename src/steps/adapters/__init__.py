"""Step source adapters.

Each adapter turns one external capability into observations:

    DeviceSensorAdapter   — continuous on-device step sensor (callback)
    PlatformHealthAdapter — polled platform health query (timer)

Concrete capabilities:
    PushedStepSensor      — sensor fed by the companion device over HTTP
    GoogleFitHealthSource — Google Fit REST aggregate endpoint
"""

from src.steps.adapters.google_fit import GoogleFitHealthSource
from src.steps.adapters.health import PlatformHealthAdapter
from src.steps.adapters.sensor import DeviceSensorAdapter, PushedStepSensor

__all__ = [
    "DeviceSensorAdapter",
    "PlatformHealthAdapter",
    "PushedStepSensor",
    "GoogleFitHealthSource",
]
