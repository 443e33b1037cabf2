from __future__ import annotations


class RayExtentError(RuntimeError):
    """A numerical invariant of the ray quantisation was violated."""


class LimitCycleError(RayExtentError):
    pass


class DegenerateProjectionError(RayExtentError):
    pass
