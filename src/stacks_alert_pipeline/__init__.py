"""Stacks Alert Pipeline - reorg-aware chain event alerting."""

__version__ = "0.1.0"
