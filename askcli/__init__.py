"""askcli: a command-line assistant that answers by calling tools."""

__version__ = "0.3.0"
