from __future__ import annotations

from typing import Dict, List, Tuple

import numpy as np
import pandas as pd


def _greedy_match(cost: np.ndarray, ok: np.ndarray) -> List[Tuple[int, int]]:
    r"""
    One-to-one matching of rows (roads) to columns (truth lines).

    Admissible pairs (``ok``) are taken by ascending ``cost``; each road and
    each truth line is used at most once.
    """
    if cost.size == 0:
        return []
    rows, cols = np.nonzero(ok)
    order = np.argsort(cost[rows, cols], kind="stable")
    used_r = set()
    used_c = set()
    out = []
    for k in order:
        r, c = int(rows[k]), int(cols[k])
        if r in used_r or c in used_c:
            continue
        used_r.add(r)
        used_c.add(c)
        out.append((r, c))
    return out


def match_roads_to_truth(
    roads: pd.DataFrame,
    truth: pd.DataFrame,
    *,
    z_ref: float = 0.0,
    pos_tol: float = 2e-3,
    slope_tol: float = 5e-3,
) -> Tuple[Dict[str, float], pd.DataFrame]:
    r"""
    Compare reconstructed roads with simulated track lines.

    Within each ``(event, projection)`` group, a road and a truth line are
    admissible when

    .. math::

        |\Delta x(z_\text{ref})| \le \text{pos\_tol}, \qquad
        |\Delta\,\text{slope}| \le \text{slope\_tol},

    with :math:`\Delta x(z) = \Delta\text{pos} + z\,\Delta\text{slope}`.
    Admissible pairs are matched greedily by ascending :math:`|\Delta x|`.

    Parameters
    ----------
    roads : pandas.DataFrame
        Columns ``event, projection, pos, slope`` (e.g. from
        :func:`mwdc_reco.export.roads_to_frame`).
    truth : pandas.DataFrame
        Columns ``event, projection, pos, slope`` (from
        :func:`mwdc_reco.data.generate_events`).
    z_ref : float, optional
        Where positions are compared (m).
    pos_tol, slope_tol : float, optional

    Returns
    -------
    summary : dict
        ``n_true``, ``n_roads``, ``n_matched``, ``efficiency``, ``n_fake``,
        ``pos_resid_mean``, ``pos_resid_rms``, ``slope_resid_mean``,
        ``slope_resid_rms`` (residuals are road minus truth).
    matched : pandas.DataFrame
        One row per match: ``event, projection, pos, slope, pos_true,
        slope_true, dpos, dslope``.
    """
    keys = ["event", "projection"]
    rows = []
    for key, tgroup in truth.groupby(keys, sort=True):
        rmask = np.ones(len(roads), dtype=bool)
        for k, v in zip(keys, key):
            rmask &= (roads[k] == v).to_numpy()
        rgroup = roads.loc[rmask]
        if rgroup.empty:
            continue
        rp = rgroup["pos"].to_numpy(dtype=np.float64)
        rs = rgroup["slope"].to_numpy(dtype=np.float64)
        tp = tgroup["pos"].to_numpy(dtype=np.float64)
        ts = tgroup["slope"].to_numpy(dtype=np.float64)
        dslope = rs[:, None] - ts[None, :]
        dx = (rp[:, None] - tp[None, :]) + z_ref * dslope
        ok = (np.abs(dx) <= pos_tol) & (np.abs(dslope) <= slope_tol)
        for i, j in _greedy_match(np.abs(dx), ok):
            rows.append({
                "event": key[0], "projection": key[1],
                "pos": rp[i], "slope": rs[i], "pos_true": tp[j], "slope_true": ts[j],
                "dpos": rp[i] - tp[j], "dslope": rs[i] - ts[j],
            })

    matched = pd.DataFrame(rows, columns=[
        "event", "projection", "pos", "slope", "pos_true", "slope_true", "dpos", "dslope",
    ])
    n_true = len(truth)
    n_matched = len(matched)

    def _mean(a: pd.Series) -> float:
        return float(a.mean()) if len(a) else float("nan")

    def _rms(a: pd.Series) -> float:
        return float(np.sqrt(np.mean(np.square(a.to_numpy())))) if len(a) else float("nan")

    summary = {
        "n_true": n_true,
        "n_roads": len(roads),
        "n_matched": n_matched,
        "efficiency": n_matched / n_true if n_true else 0.0,
        "n_fake": len(roads) - n_matched,
        "pos_resid_mean": _mean(matched["dpos"]),
        "pos_resid_rms": _rms(matched["dpos"]),
        "slope_resid_mean": _mean(matched["dslope"]),
        "slope_resid_rms": _rms(matched["dslope"]),
    }
    return summary, matched
