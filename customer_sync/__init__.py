"""Reconcile customer / order / product-line JSON snapshots against a relational store."""

__version__ = "0.1.0"
