"""
The built-in library of the SE(3) group, its state, and the system and
measurement models used by the filters.
"""

from .group import SE3

from .states import SE3State

from .models import (
    BodyFrameTwist,
    LandmarkRelativePosition,
    GlobalPosition,
    FirstOrderMeasurement,
)
