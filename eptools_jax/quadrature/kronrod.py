# eptools_jax/quadrature/kronrod.py
from __future__ import annotations

import jax.numpy as jnp

# -----------------------------------------------------------------------------
# Gauss–Kronrod G7/K15 nodes and weights on [-1, 1] (QUADPACK qk15 constants)
# -----------------------------------------------------------------------------

_XGK = (
    0.991455371120812639206854697526329,
    0.949107912342758524526189684047851,
    0.864864423359769072789712788640926,
    0.741531185599394439863864773280788,
    0.586087235467691130294144845693013,
    0.405845151377397166906606412076961,
    0.207784955007898467600689403773245,
    0.000000000000000000000000000000000,
)

_WGK = (
    0.022935322010529224963732008058970,
    0.063092092629978553290700663189204,
    0.104790010322250183839876322541518,
    0.140653259715525918745189590510238,
    0.169004726639267902826583426598550,
    0.190350578064785409913256402421014,
    0.204432940075298892414161999234649,
    0.209482141084727828012999174891714,
)

# Gauss weights live on the odd Kronrod nodes (xgk[1], xgk[3], xgk[5], 0).
_WG = (
    0.129484966168869693270611432679082,
    0.279705391489276667901467771423780,
    0.381830050505118944950369775488975,
    0.417959183673469387755102040816327,
)

# Full symmetric layout, ordered from -1 to 1.
K15_NODES = jnp.array(
    [-x for x in _XGK[:7]] + [0.0] + list(reversed(_XGK[:7])),
    dtype=jnp.float64,
)
K15_WEIGHTS = jnp.array(
    list(_WGK[:7]) + [_WGK[7]] + list(reversed(_WGK[:7])),
    dtype=jnp.float64,
)
G7_WEIGHTS = jnp.array(
    [0.0, _WG[0], 0.0, _WG[1], 0.0, _WG[2], 0.0, _WG[3],
     0.0, _WG[2], 0.0, _WG[1], 0.0, _WG[0], 0.0],
    dtype=jnp.float64,
)


def gauss_kronrod_15(integrand, lo, hi):
    """
    Apply the G7/K15 pair on a batch of intervals.

    Parameters
    ----------
    integrand : callable
        Maps nodes of shape (n,) to values of shape (n,) or (k, n).
    lo, hi : jnp.ndarray
        Interval bounds, shape (m,).

    Returns
    -------
    kron : jnp.ndarray
        Kronrod estimates, shape (k, m).
    err : jnp.ndarray
        Per-interval error estimate |K15 - G7|, maximised over the k
        components, shape (m,).
    """
    centre = 0.5 * (lo + hi)
    half = 0.5 * (hi - lo)
    x = centre[:, None] + half[:, None] * K15_NODES[None, :]  # (m, 15)
    m = x.shape[0]

    vals = jnp.asarray(integrand(x.reshape(-1)))
    if vals.ndim == 1:
        vals = vals[None, :]
    vals = vals.reshape(vals.shape[0], m, 15)

    kron = jnp.sum(vals * K15_WEIGHTS, axis=-1) * half
    gauss = jnp.sum(vals * G7_WEIGHTS, axis=-1) * half
    err = jnp.max(jnp.abs(kron - gauss), axis=0)
    return kron, err
