"""
ixcheck - Interference check studies for broadcast TV proposals.

Find the stations a proposal could affect, probe for interference, build the
MX scenario combinations, and run the study engine with cached results.
"""

from ixcheck.build import RunOutcome, StudyBuild

__version__ = "0.1.0"
__all__ = ["StudyBuild", "RunOutcome", "__version__"]
