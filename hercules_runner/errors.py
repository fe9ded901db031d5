"""Error kinds raised by hercules-runner components.

Every error derives from ``HerculesError`` so the CLI can catch them at the
command boundary and turn them into a single readable line.
"""


class HerculesError(Exception):
    """Base class for all hercules-runner failures."""


class RuntimeUnavailable(HerculesError):
    """A required interpreter or container engine is not installed."""


class NoWorkspace(HerculesError):
    """No workspace folder is available for the requested operation."""


class LaunchFailed(HerculesError):
    """A child process could not start or expose its debug endpoint."""


class InstallFailed(HerculesError):
    """A package, image or virtual-env installation step failed."""


class ConfigIO(HerculesError):
    """Reading, validating or writing the persisted configuration failed."""


class ApiError(HerculesError):
    """An upstream HTTP call returned a non-success status or no response."""


class NoPreviousRun(HerculesError):
    """There is no usable last-run marker to rerun."""
