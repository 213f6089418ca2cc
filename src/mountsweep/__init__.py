"""
mountsweep - Configuration sweeps for nested NFS/SMB exports.

Apply a configuration, probe what the client sees, revert, repeat.
"""

from mountsweep.driver import SweepDriver
from mountsweep.probe import MountProbe, classify
from mountsweep.report import recommend, summarize

__version__ = "0.1.0"
__all__ = ["MountProbe", "SweepDriver", "__version__", "classify", "recommend", "summarize"]
