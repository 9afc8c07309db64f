"""kubenav - navigate and operate on many Kubernetes clusters from one REPL."""

__version__ = "0.5.4"
