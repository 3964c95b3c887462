"""Mirror a remote directory to a local one over SSH and rsync, with watch modes."""

__version__ = "1.0.1"

__all__ = ["__version__"]