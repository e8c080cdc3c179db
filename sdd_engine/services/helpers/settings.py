"""Engine tunables read from the active app config.

Defaults mirror ``sdd_engine.config.Config`` so services also work under a
bare app context in tests.
"""

from flask import current_app

_DEFAULTS = {
    "LEARNING_VALIDATION_INCREMENT": 0.15,
    "LEARNING_REFERENCE_INCREMENT": 0.10,
    "LEARNING_CONFIDENCE_CAP": 1.00,
    "LEARNING_DEFAULT_CONFIDENCE": 0.50,
    "PROPAGATION_CONFIDENCE_THRESHOLD": 0.80,
    "PROPAGATION_RELEVANCE_THRESHOLD": 0.60,
    "HIGH_CONFIDENCE_THRESHOLD": 0.80,
    "EXPECTED_MINUTES_BY_COMPLEXITY": {1: 60, 2: 180, 3: 480},
    "HEALTHY_THRESHOLD": 70.0,
    "CONCERNING_THRESHOLD": 50.0,
    "THRASHING_RATE_CRITICAL": 15.0,
    "DURATION_OVERRUN_FACTOR": 2.0,
}


def setting(name: str):
    """Return config value ``name``, falling back to the engine default."""
    return current_app.config.get(name, _DEFAULTS[name])
