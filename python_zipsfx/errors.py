"""Generator-side error types.

The runtime embedded into bundles defines its own errors (see
:mod:`python_zipsfx.runtime`), since it must not depend on this package.
"""


class BuildError(RuntimeError):
    """Raised when bundling fails."""


class InputError(BuildError):
    """Raised for missing or unsafe inputs and conflicting archive names."""


class CapacityError(BuildError):
    """Raised when an input exceeds the configured size ceiling."""
