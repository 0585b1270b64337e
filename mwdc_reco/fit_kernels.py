from __future__ import annotations

from typing import Tuple

import numpy as np
from numba import njit, prange

__all__ = ["fit_lines", "line_errsq"]


@njit(parallel=True)
def _fit_lines_kernel(x, z, w, pos, slope, chi2, cov, ok):
    m, n = x.shape
    for i in prange(m):
        s1 = 0.0
        sz = 0.0
        szz = 0.0
        sx = 0.0
        sxz = 0.0
        for j in range(n):
            wj = w[i, j]
            zj = z[i, j]
            xj = x[i, j]
            s1 += wj
            sz += wj * zj
            szz += wj * zj * zj
            sx += wj * xj
            sxz += wj * xj * zj
        det = s1 * szz - sz * sz
        # all points at (numerically) the same z
        if not (det > 1e-14 * s1 * szz) or not np.isfinite(det):
            ok[i] = False
            continue
        b = (s1 * sxz - sz * sx) / det
        a = (szz * sx - sz * sxz) / det
        c2 = 0.0
        if n > 2:
            for j in range(n):
                r = x[i, j] - a - b * z[i, j]
                c2 += w[i, j] * r * r
        pos[i] = a
        slope[i] = b
        chi2[i] = c2
        cov[i, 0] = szz / det
        cov[i, 1] = -sz / det
        cov[i, 2] = s1 / det
        ok[i] = (
            np.isfinite(a) and np.isfinite(b) and np.isfinite(c2)
            and np.isfinite(cov[i, 0]) and np.isfinite(cov[i, 1]) and np.isfinite(cov[i, 2])
        )


def fit_lines(
    x: np.ndarray, z: np.ndarray, w: np.ndarray
) -> Tuple[np.ndarray, np.ndarray, np.ndarray, np.ndarray, np.ndarray]:
    r"""
    Batched weighted least-squares straight-line fits.

    Each row :math:`i` holds the :math:`n` points of one fit hypothesis and
    is fit independently to :math:`x = a + b\,z` by minimising

    .. math::

        \chi^2_i = \sum_j w_{ij}\,(x_{ij} - a_i - b_i z_{ij})^2,
        \qquad w_{ij} = 1/\sigma_{ij}^2 .

    With :math:`S_1=\sum w`, :math:`S_z=\sum wz`, :math:`S_{zz}=\sum wz^2`,
    :math:`S_x=\sum wx`, :math:`S_{xz}=\sum wxz` and
    :math:`\Delta = S_1 S_{zz} - S_z^2`:

    .. math::

        b = \frac{S_1 S_{xz} - S_z S_x}{\Delta},\quad
        a = \frac{S_{zz} S_x - S_z S_{xz}}{\Delta},\quad
        V = \frac{1}{\Delta}\begin{pmatrix} S_{zz} & -S_z \\ -S_z & S_1 \end{pmatrix}.

    Parameters
    ----------
    x, z, w : ndarray, shape (m, n)
        Coordinates, longitudinal positions and weights. ``n >= 2``.

    Returns
    -------
    pos : ndarray, shape (m,)
        Intercept :math:`a` at :math:`z = 0`.
    slope : ndarray, shape (m,)
    chi2 : ndarray, shape (m,)
        Exactly ``0`` when ``n == 2`` (no degrees of freedom).
    cov : ndarray, shape (m, 3)
        ``(V11, V12, V22)`` of ``(pos, slope)``.
    ok : ndarray of bool, shape (m,)
        ``False`` for degenerate (all points at one z) or non-finite fits;
        the other outputs of such rows are undefined.

    Raises
    ------
    ValueError
        If the shapes differ or ``n < 2``.
    """
    x = np.ascontiguousarray(x, dtype=np.float64)
    z = np.ascontiguousarray(z, dtype=np.float64)
    w = np.ascontiguousarray(w, dtype=np.float64)
    if x.ndim != 2 or x.shape != z.shape or x.shape != w.shape:
        raise ValueError(f"fit_lines: x, z, w must share one 2-D shape, got {x.shape}, {z.shape}, {w.shape}")
    m, n = x.shape
    if n < 2:
        raise ValueError(f"fit_lines: need at least 2 points per fit, got {n}")
    pos = np.zeros(m)
    slope = np.zeros(m)
    chi2 = np.zeros(m)
    cov = np.zeros((m, 3))
    ok = np.zeros(m, dtype=np.bool_)
    if m:
        _fit_lines_kernel(x, z, w, pos, slope, chi2, cov, ok)
    return pos, slope, chi2, cov, ok


def line_errsq(cov, z):
    r"""Position variance of a fitted line at ``z``: :math:`V_{11} + 2V_{12}z + V_{22}z^2`."""
    return cov[0] + 2.0 * cov[1] * z + cov[2] * z * z
