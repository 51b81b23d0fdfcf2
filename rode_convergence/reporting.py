# rode_convergence/reporting.py
"""
Read-only views of a ConvergenceResult: tables, DataFrames, plots and JSON
files. Every function here also accepts the dict produced by
``ConvergenceResult.to_dict()`` or returned by ``load_result``, so saved runs
can be tabulated and plotted together later.
"""

from __future__ import annotations
import json
import math
import os
from typing import Optional

import numpy as np
import pandas as pd

from .errors import ConfigurationError


def _to_ser(x):
    if isinstance(x, np.ndarray):
        return x.tolist()
    if isinstance(x, np.floating):
        return float(x)
    if isinstance(x, np.integer):
        return int(x)
    if isinstance(x, dict):
        return {k: _to_ser(v) for k, v in x.items()}
    if isinstance(x, (list, tuple)):
        return [_to_ser(v) for v in x]
    return x


def _as_dict(result) -> dict:
    if isinstance(result, dict):
        return result
    return result.to_dict()


def _sig3(x) -> str:
    return f"{float(x):.3g}"


def _method_name(desc: dict) -> str:
    name = str(desc.get("method", "RODE"))
    name = name.split("(")[0]
    return {"RandomEuler": "Euler", "RandomHeun": "Heun"}.get(name, name)


def generate_error_table(result, info: Optional[dict] = None, fmt: str = "latex") -> str:
    """
    Table of mesh sizes N, time steps dt and strong errors (3 significant digits).

    Parameters
    ----------
    result : ConvergenceResult or dict
    info : dict, optional
        Keys "equation", "ic" and "noise" used in the caption. Missing keys
        default to "RODE", the initial law name and the noise description.
    fmt : str
        "latex" (tabular plus caption) or "markdown".
    """
    d = _as_dict(result)
    desc = d["suite"]
    info = dict(info or {})
    equation = info.get("equation", "RODE")
    ic = info.get("ic", desc["x0law"])
    noise = info.get("noise", desc["noise"])

    ntgt = int(desc["ntgt"])
    log2 = math.log2(ntgt)
    if log2 == int(log2):
        tgt = f"$2^{{{int(log2)}}}={ntgt}$"
    else:
        tgt = f"${ntgt}$"
    caption = (
        f"Mesh points (N), time steps (dt), and strong error (error) of the {_method_name(desc)} "
        f"method for {equation}, with initial condition {ic} and {noise}, on the time interval "
        f"({desc['t0']}, {desc['tf']}), based on $m = {desc['m']}$ sample paths for each fixed "
        f"time step, with the target solution calculated with {tgt} points."
    )
    rows = list(zip(desc["ns"], d["deltas"], d["errors"]))

    fmt = str(fmt).lower()
    if fmt == "markdown":
        lines = ["| N | dt | error |", "| --- | --- | --- |"]
        lines += [f"| {n} | {_sig3(dt)} | {_sig3(e)} |" for n, dt, e in rows]
        return "\n".join(lines) + "\n\nTable: " + caption + "\n"
    if fmt != "latex":
        raise ValueError("fmt must be 'latex' or 'markdown'")

    table = "\\begin{tabular}[htb]{|l|l|l|}\n"
    table += "\\hline N & dt & error\\\\\n"
    table += "\\hline \\hline\n"
    for n, dt, e in rows:
        table += f"{n} & {_sig3(dt)} & {_sig3(e)} \\\\\n"
    table += "\\hline \\\\\n"
    table += "\\end{tabular}\n"
    table += "\\caption{" + caption + "}"
    return table


def error_frame(result) -> pd.DataFrame:
    """One row per resolution: N, dt, error and the fitted C dt^p."""
    d = _as_dict(result)
    deltas = np.asarray(d["deltas"], dtype=float)
    df = pd.DataFrame({
        "N": np.asarray(d["suite"]["ns"], dtype=int),
        "dt": deltas,
        "error": np.asarray(d["errors"], dtype=float),
    })
    df["fit"] = math.exp(d["lc"]) * deltas ** d["p"]
    return df


def trajectory_frame(result) -> pd.DataFrame:
    """
    Mean pathwise error curves in long format: columns N, t, error. Only the
    first N points of each resolution are kept (the rest is padding).
    """
    d = _as_dict(result)
    desc = d["suite"]
    traj = np.asarray(d["trajerrors"], dtype=float)
    parts = []
    for i, n in enumerate(desc["ns"]):
        n = int(n)
        parts.append(pd.DataFrame({
            "N": n,
            "t": np.linspace(desc["t0"], desc["tf"], n),
            "error": traj[:n, i],
        }))
    return pd.concat(parts, ignore_index=True)


def _axes(ax):
    if ax is None:
        import matplotlib.pyplot as plt
        _fig, ax = plt.subplots(figsize=(7, 5))
    return ax


def plot_convergence(result, ax=None):
    """Log-log plot of the strong errors against dt with the fitted line."""
    d = _as_dict(result)
    ax = _axes(ax)
    df = error_frame(d)
    eps = d["eps"]
    eps_str = "" if not np.isfinite(eps) else f" $\\pm$ {eps:.2f}"
    ax.loglog(df["dt"], df["error"], "o", label="strong errors")
    ax.loglog(df["dt"], df["fit"], "--", label=f"fit $C\\Delta t^p$, p = {d['p']:.2f}{eps_str}")
    ax.set_xlabel("$\\Delta t$")
    ax.set_ylabel("error")
    ax.set_title(f"Order of convergence ({_method_name(d['suite'])})")
    ax.grid(True, which="both", alpha=0.3)
    ax.legend()
    return ax


def plot_trajectory_errors(result, ax=None):
    """Mean pathwise error in time, one curve per resolution."""
    ax = _axes(ax)
    for n, grp in trajectory_frame(result).groupby("N"):
        ax.plot(grp["t"], grp["error"], label=f"N = {n}")
    ax.set_xlabel("t")
    ax.set_ylabel("error")
    ax.set_title("Mean pathwise error")
    ax.legend()
    return ax


def plot_sample(suite, ns=None, xshow=True, yshow=False, ax=None):
    """
    Plot the last sample held by a suite after a run: the target solution on
    the fine mesh and the approximations of `suite.method` on coarse meshes.

    Parameters
    ----------
    suite : ConvergenceSuite
        A suite that has been through ``solve``; its ``yt`` and ``xt`` caches
        hold the noise path and target solution of the last sample.
    ns : sequence of int, optional
        Coarse mesh sizes to draw. Defaults to ``suite.ns``; an empty sequence
        draws the target only. Each must divide ``suite.ntgt``.
    xshow, yshow : bool
        Draw the solution curves and/or the noise columns.
    """
    ntgt = suite.ntgt
    ns = suite.ns if ns is None else tuple(int(n) for n in ns)
    for n in ns:
        if n < 2 or ntgt % n != 0:
            raise ConfigurationError(f"mesh size {n} must be at least 2 and divide ntgt={ntgt}")

    ax = _axes(ax)
    yt, xt = suite.yt, suite.xt
    tt = np.linspace(suite.t0, suite.tf, ntgt)

    if xshow:
        ax.plot(tt, xt, linewidth=4, alpha=0.6, label="target")
        x0 = xt[0].copy() if xt.ndim == 2 else float(xt[0])
        for n in ns:
            k = ntgt // n
            xnt = np.empty((n,) + xt.shape[1:])
            suite.method.solve(xnt, suite.t0, suite.tf, x0, suite.f, yt[0:k * (n - 1) + 1:k])
            ax.plot(np.linspace(suite.t0, suite.tf, n), xnt, "--", label=f"N = {n}")
    if yshow:
        ax.plot(tt, yt, alpha=0.4, label="noise")

    ax.set_xlabel("t")
    ax.set_title("Sample path and approximations")
    ax.legend()
    return ax


def save_result(result, path: str) -> str:
    """Write ``result.to_dict()`` to `path` as JSON and return the path."""
    d = os.path.dirname(os.path.abspath(path))
    os.makedirs(d, exist_ok=True)
    with open(path, "w", encoding="utf-8") as fh:
        json.dump(_to_ser(_as_dict(result)), fh, indent=2)
    return path


def load_result(path: str) -> dict:
    with open(path, "r", encoding="utf-8") as fh:
        return json.load(fh)


__all__ = [
    "generate_error_table",
    "error_frame",
    "trajectory_frame",
    "plot_convergence",
    "plot_trajectory_errors",
    "plot_sample",
    "save_result",
    "load_result",
]
