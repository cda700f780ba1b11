"""Bundled read-only resources.

``config.json`` holds the default configuration used when the user has none.
Vendor download scripts (``HP-Drivers.ps1``, ``Lenovo-Drivers.ps1``,
``Dell-Drivers.ps1``) are dropped into ``scripts/`` at build time; their
content is opaque to this package.
"""
