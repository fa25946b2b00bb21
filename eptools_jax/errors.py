# eptools_jax/errors.py
"""
Error taxonomy.

- DomainError:               invalid input to a pure numerical primitive
                             (caller / model bug, never retried).
- NumericalError:            a primitive failed numerically (non-finite
                             closed form, quadrature or proximal solve did not
                             converge, improper cavity). The driver recovers
                             from it by skipping the site for the sweep.
- NonPositiveDefiniteError:  an update would break positive definiteness of
                             the joint precision. The driver recovers by
                             damping.
- SiteIndexError:            bad site index (caller bug).
"""


class EPError(Exception):
    """Base class of all errors raised by eptools_jax."""


class DomainError(EPError, ValueError):
    pass


class NumericalError(EPError, ArithmeticError):
    pass


class NonPositiveDefiniteError(EPError, ArithmeticError):
    pass


class SiteIndexError(EPError, IndexError):
    pass


def check_site_index(index, num_sites: int) -> int:
    """Validate a site index and return it as a Python int."""
    try:
        i = int(index)
    except (TypeError, ValueError) as e:
        raise SiteIndexError(f"Site index must be an integer, got {index!r}.") from e
    if i != index or not 0 <= i < num_sites:
        raise SiteIndexError(f"Site index {index} out of range [0, {num_sites}).")
    return i
