from __future__ import annotations

import cProfile
import gc
import io
import logging
import pstats
import time
from contextlib import contextmanager
from pathlib import Path
from typing import Optional, Sequence, Union

_SORT_KEYS = {
    "tottime": pstats.SortKey.TIME,
    "cumtime": pstats.SortKey.CUMULATIVE,
    "calls": pstats.SortKey.CALLS,
    "ncalls": pstats.SortKey.CALLS,
    "pcalls": pstats.SortKey.PCALLS,
    "name": pstats.SortKey.NAME,
    "file": pstats.SortKey.FILENAME,
    "line": pstats.SortKey.LINE,
    "nfl": pstats.SortKey.NFL,
    "stdname": pstats.SortKey.STDNAME,
}


def _resolve_sort_key(sort: Union[str, pstats.SortKey]) -> pstats.SortKey:
    """Map a string alias (``"tottime"``, ``"cumtime"``, ...) to a :class:`pstats.SortKey`."""
    if isinstance(sort, pstats.SortKey):
        return sort
    try:
        return _SORT_KEYS[str(sort).lower()]
    except KeyError:
        raise ValueError(
            f"Unknown profile sort key '{sort}'. Choose one of: {', '.join(_SORT_KEYS)}"
        ) from None


@contextmanager
def prof(
    enable: bool = False,
    *,
    sort: Union[str, pstats.SortKey] = "tottime",
    limit: Optional[int] = 25,
    out_path: Optional[Union[str, Path]] = None,
    dump_path: Optional[Union[str, Path]] = None,
    strip_dirs: bool = True,
    disable_gc: bool = False,
    include: Optional[Sequence[Union[str, int]]] = None,
    logger: Optional[logging.Logger] = None,
):
    r"""
    CPU profiler context manager around :class:`cProfile.Profile`.

    The elapsed wall time :math:`\Delta t = t_1 - t_0` of the block is taken
    with :func:`time.perf_counter` and written in the header of the report.

    Parameters
    ----------
    enable : bool, default: False
        If ``False`` the context is a no-op and yields ``None``.
    sort : str or pstats.SortKey, default: ``"tottime"``
    limit : int or None, default: 25
        Rows printed; ``None`` prints all.
    out_path : str or Path, optional
        Write the text report to this file.
    dump_path : str or Path, optional
        Write binary ``.pstats`` data (for snakeviz, gprof2dot).
    strip_dirs : bool, default: True
    disable_gc : bool, default: False
        Suspend garbage collection inside the block.
    include : sequence, optional
        Restrictions forwarded to :meth:`pstats.Stats.print_stats`, e.g.
        ``("mwdc_reco",)``.
    logger : logging.Logger, optional
        Without ``out_path``, emit the report with ``logger.info``; otherwise
        it is printed.

    Yields
    ------
    cProfile.Profile or None

    Examples
    --------
    >>> with prof(True, sort="cumtime", include=("road",)):
    ...     builder.build(nodes)
    """
    if not enable:
        yield None
        return

    key = _resolve_sort_key(sort)
    pr = cProfile.Profile()
    gc_was_enabled = disable_gc and gc.isenabled()
    if gc_was_enabled:
        gc.disable()

    t0 = time.perf_counter()
    pr.enable()
    try:
        yield pr
    finally:
        pr.disable()
        t1 = time.perf_counter()
        if gc_was_enabled:
            gc.enable()

        s = io.StringIO()
        ps = pstats.Stats(pr, stream=s)
        if strip_dirs:
            ps.strip_dirs()
        ps.sort_stats(key)
        if include:
            ps.print_stats(*include)
        else:
            ps.print_stats(limit if limit is not None else 1_000_000)
        text = f"[prof] elapsed={t1 - t0:.6f}s sort={key.name.lower()} limit={limit} gc_off={disable_gc}\n" + s.getvalue()

        if dump_path:
            ps.dump_stats(str(dump_path))
        if out_path:
            Path(out_path).write_text(text, encoding="utf-8")
        elif logger is not None:
            logger.info(text)
        else:
            print(text, end="")
