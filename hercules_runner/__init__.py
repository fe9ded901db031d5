"""Configure, launch and monitor TestZeus Hercules test runs."""

__version__ = "0.1.0"
