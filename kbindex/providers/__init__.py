"""Concrete adapters for the interfaces in :mod:`kbindex.interfaces`."""
