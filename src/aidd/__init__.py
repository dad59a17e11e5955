"""aidd: unattended AI development driver."""

__version__ = "0.4.0"
