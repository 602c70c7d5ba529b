"""Oracle Monitor - multi-protocol price oracle monitoring and alerting."""

__version__ = "0.1.0"
