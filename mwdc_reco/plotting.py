from __future__ import annotations

import logging
from pathlib import Path
from typing import Iterable, Mapping, Optional, Sequence

import matplotlib.patches as patches
import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
from matplotlib import cm

from mwdc_reco.geometry import Projection
from mwdc_reco.hits import Hit
from mwdc_reco.road import Road

logger = logging.getLogger(__name__)


def _show_and_close(fig, *, do_show: bool = True, out_path: Optional[str | Path] = None) -> None:
    """Optionally save and show a figure, then always close it."""
    fig.tight_layout()
    if out_path is not None:
        fig.savefig(out_path, dpi=150)
        logger.info("Saved figure to %s", out_path)
    if do_show:
        plt.show()
    plt.close(fig)


def plot_roads(
    projection: Projection,
    hits: Mapping[str, Sequence[Hit]] | Iterable[Hit],
    roads: Sequence[Road],
    *,
    title: Optional[str] = None,
    show: bool = True,
    out_path: Optional[str | Path] = None,
):
    r"""
    Event display of one projection in the (x, z) plane.

    Draws every hit of the projection's planes as its wire position with the
    left/right ambiguity :math:`[x_L, x_R]` as a segment, the corner polygon
    LL, LR, UR, UL of each road, its best-fit line
    :math:`x(z) = \text{pos} + \text{slope}\,z` and the points of the fit.

    Parameters
    ----------
    projection : Projection
    hits : mapping of plane name to hits, or iterable of Hit
        Hits of other projections are skipped.
    roads : sequence of Road
    title : str, optional
    show : bool, optional
        Call ``plt.show()`` (disable in batch mode).
    out_path : str or Path, optional
        Save the figure here.

    Returns
    -------
    matplotlib.figure.Figure
        The (closed) figure, for inspection in tests.
    """
    if isinstance(hits, Mapping):
        hits = [h for plist in hits.values() for h in plist]
    names = {p.name for p in projection.planes}
    hits = [h for h in hits if h.plane.name in names]

    fig, ax = plt.subplots(figsize=(9, 6))
    for plane in projection.planes:
        ax.axhline(plane.z, color="0.85", lw=0.8, zorder=0)
    if hits:
        z = np.array([h.z for h in hits])
        ax.hlines(z, [h.pos_l for h in hits], [h.pos_r for h in hits], color="tab:gray", lw=2.0, alpha=0.6)
        ax.scatter([h.pos for h in hits], z, marker="|", s=60, color="k", label="wires hit")

    colors = cm.viridis(np.linspace(0.0, 0.9, max(len(roads), 1)))
    zz = np.array([projection.z_lo, projection.z_hi])
    for i, road in enumerate(roads):
        c = road.corners
        poly = patches.Polygon(
            [(c.x_ll, c.z_l), (c.x_lr, c.z_l), (c.x_ur, c.z_u), (c.x_ul, c.z_u)],
            closed=True, fill=False, edgecolor=colors[i], lw=1.2,
        )
        ax.add_patch(poly)
        if road.n_fits:
            ax.plot(road.pos + road.slope * zz, zz, color=colors[i], lw=1.0,
                    label=f"road {i}: chi2={road.chi2:.2f}")
            pts = road.get_points()
            ax.scatter([p.x for p in pts], [p.z for p in pts], color=colors[i], s=18, zorder=3)

    ax.set_xlabel(f"{projection.name} (m)")
    ax.set_ylabel("z (m)")
    ax.set_title(title or f"Projection {projection.name}: {len(hits)} hits, {len(roads)} roads")
    if hits or roads:
        ax.legend(loc="best", fontsize="small")
    _show_and_close(fig, do_show=show, out_path=out_path)
    return fig


def plot_residuals(matched: pd.DataFrame, *, show: bool = True, out_path: Optional[str | Path] = None):
    """Histograms of road-minus-truth position and slope residuals."""
    fig, axes = plt.subplots(1, 2, figsize=(10, 4))
    for ax, col, unit in zip(axes, ("dpos", "dslope"), ("m", "")):
        vals = matched[col].to_numpy(dtype=np.float64) if col in matched else np.empty(0)
        ax.hist(vals, bins=40, color="tab:blue", alpha=0.8)
        ax.set_xlabel(f"{col} {unit}".strip())
        ax.set_ylabel("matches")
    fig.suptitle(f"Residuals ({len(matched)} matched roads)")
    _show_and_close(fig, do_show=show, out_path=out_path)
    return fig
