"""python-zipsfx.

A small build utility that bundles a multi-file Python program into a single
self-extracting, directly executable file whose payload is a ZIP archive.
"""

__all__: list[str] = ["__version__"]

__version__: str = "0.1.0"
