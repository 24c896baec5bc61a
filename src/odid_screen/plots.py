"""
Visualization functions for screening results.

This module provides plotting functions for the ODID screen: a volcano plot
of a timepoint contrast, the mean-dispersion plot of the fitted model, and a
heatmap of concentration trajectories for the top hits.

Functions
---------
volcano_plot
    Create a volcano plot of log fold change vs significance.
dispersion_plot
    Raw, trend and final dispersions against mean normalized count.
odid_heatmap
    Heatmap of log2 ODID trajectories for the most significant features.
"""
from __future__ import annotations

from pathlib import Path
from typing import Optional, Sequence

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns


def _save(fig, outpath: Optional[str | Path], dpi: int) -> None:
    if outpath is not None:
        outpath = Path(outpath)
        outpath.parent.mkdir(parents=True, exist_ok=True)
        fig.savefig(outpath, dpi=dpi, bbox_inches="tight")


def volcano_plot(
    df: pd.DataFrame,
    *,
    x_col: str = "log2FoldChange_t3",
    q_col: str = "padj_t3",
    label_col: Optional[str] = "aa_seq",
    q_thresh: float = 0.10,
    lfc_thresh: float = 1.0,
    title: Optional[str] = None,
    top_n_labels: int = 10,
    outpath: Optional[str | Path] = None,
    dpi: int = 200,
):
    """Create a volcano plot of log fold change vs significance.

    Generates a scatter plot with log2 fold change on the x-axis and
    -log10(adjusted p-value) on the y-axis. Points are colored by direction:
    blue for positive LFC (enriched), red for negative LFC (depleted).

    Parameters
    ----------
    df : pd.DataFrame
        Result table from :func:`~odid_screen.pipeline.run_pipeline`.
    x_col : str, default "log2FoldChange_t3"
        Column for the x-axis.
    q_col : str, default "padj_t3"
        Adjusted p-value column.
    label_col : str or None, default "aa_seq"
        Column used to label the most significant points; the index is used
        when the column is absent.
    q_thresh : float, default 0.10
        A horizontal line is drawn at -log10(q_thresh).
    lfc_thresh : float, default 1.0
        Vertical lines are drawn at +/- lfc_thresh.
    title : str or None
        Plot title.
    top_n_labels : int, default 10
        Number of most significant points to label.
    outpath : str, Path, or None
        If provided, save the figure to this path.
    dpi : int, default 200
        Resolution for saved figure.

    Returns
    -------
    fig : matplotlib.figure.Figure
    ax : matplotlib.axes.Axes

    Raises
    ------
    ValueError
        If the input DataFrame is empty.
    """
    if df.empty:
        raise ValueError("volcano_plot received an empty DataFrame.")

    sub = df[np.isfinite(df[x_col]) & np.isfinite(df[q_col])]
    x = sub[x_col].to_numpy(dtype=float)
    y = -np.log10(np.clip(sub[q_col].to_numpy(dtype=float), 1e-300, 1.0))

    colors = np.where(x >= 0, "#3182bd", "#e34a33")  # blue / red

    fig, ax = plt.subplots()
    ax.scatter(x, y, c=colors, s=12, alpha=0.7)

    y_line = -np.log10(max(q_thresh, 1e-300))
    ax.axhline(y_line, color="gray", linestyle="--", linewidth=0.8, alpha=0.6)
    ax.axvline(+lfc_thresh, color="gray", linestyle="--", linewidth=0.8, alpha=0.6)
    ax.axvline(-lfc_thresh, color="gray", linestyle="--", linewidth=0.8, alpha=0.6)

    ax.set_xlabel(r"$\log_2$ fold change")
    ax.set_ylabel(r"$-\log_{10}$ adjusted p-value")
    if title:
        ax.set_title(title)

    if top_n_labels:
        top = sub.sort_values(q_col, ascending=True).head(int(top_n_labels))
        labels = top[label_col] if label_col and label_col in top.columns else top.index.to_series()
        for (_, r), lab in zip(top.iterrows(), labels):
            ax.text(float(r[x_col]), -np.log10(max(float(r[q_col]), 1e-300)), str(lab), fontsize=7)

    ax.margins(0.05)
    fig.tight_layout()
    _save(fig, outpath, dpi)
    return fig, ax


def dispersion_plot(
    fit,
    *,
    title: Optional[str] = None,
    outpath: Optional[str | Path] = None,
    dpi: int = 200,
):
    """Plot raw, trend and final dispersions against the base mean.

    Outliers (which keep their raw dispersion) are circled.

    Parameters
    ----------
    fit : ModelFit
        Fitted model from :func:`~odid_screen.model.fit_model`.
    title : str or None
        Plot title.
    outpath : str, Path, or None
        If provided, save the figure to this path.
    dpi : int, default 200
        Resolution for saved figure.

    Returns
    -------
    fig : matplotlib.figure.Figure
    ax : matplotlib.axes.Axes
    """
    bm = fit.base_mean.to_numpy(dtype=float)
    disp = fit.dispersion
    ok = bm > 0

    fig, ax = plt.subplots(figsize=(6, 4.5))
    ax.scatter(bm[ok], disp["raw_dispersion"][ok], s=6, color="black", alpha=0.5, label="raw")
    ax.scatter(bm[ok], disp["dispersion"][ok], s=6, color="#3182bd", alpha=0.6, label="final")
    outl = ok & disp["dispersion_outlier"].to_numpy(dtype=bool)
    ax.scatter(
        bm[outl], disp["raw_dispersion"][outl],
        s=30, facecolors="none", edgecolors="#3182bd", label="outlier",
    )
    order = np.argsort(bm[ok])
    ax.plot(bm[ok][order], disp["trend_dispersion"][ok].to_numpy()[order], color="#e34a33", label="trend")

    ax.set_xscale("log")
    ax.set_yscale("log")
    ax.set_xlabel("mean of normalized counts")
    ax.set_ylabel("dispersion")
    ax.legend(fontsize=8, frameon=False)
    if title:
        ax.set_title(title)

    fig.tight_layout()
    _save(fig, outpath, dpi)
    return fig, ax


def odid_heatmap(
    results: pd.DataFrame,
    *,
    timepoints: Sequence[int] = (0, 1, 2, 3),
    q_col: str = "padj_t3",
    label_col: Optional[str] = "aa_seq",
    top_n: int = 30,
    title: Optional[str] = None,
    figsize: Optional[tuple[float, float]] = None,
    outpath: Optional[str | Path] = None,
    dpi: int = 200,
):
    """Heatmap of log2 ODID trajectories for the top ``top_n`` features.

    Parameters
    ----------
    results : pd.DataFrame
        Result table with ``ODID_t{t}`` columns.
    timepoints : sequence of int
        Timepoints shown as columns.
    q_col : str, default "padj_t3"
        Column used to rank features.
    label_col : str or None, default "aa_seq"
        Row labels; the index is used when absent.
    top_n : int, default 30
        Number of rows.
    title : str or None
        Plot title.
    figsize : tuple of float or None
        Figure size; auto-sized if None.
    outpath : str, Path, or None
        If provided, save the figure to this path.
    dpi : int, default 200
        Resolution for saved figure.

    Returns
    -------
    fig : matplotlib.figure.Figure
    ax : matplotlib.axes.Axes
    data : pd.DataFrame
        The heatmap data (features x timepoints, log2 ODID).
    """
    cols = [f"ODID_t{t}" for t in timepoints]
    missing = [c for c in cols if c not in results.columns]
    if missing:
        raise ValueError(f"Missing ODID columns: {missing}")

    top = results.sort_values(q_col, ascending=True).head(int(top_n))
    if top.empty:
        raise ValueError("odid_heatmap received no features.")
    data = np.log2(top[cols].astype(float))
    data.columns = [f"t{t}" for t in timepoints]
    if label_col and label_col in top.columns:
        data.index = top[label_col].astype(str)

    if figsize is None:
        figsize = (max(4, len(cols) * 0.9 + 2), max(4, len(data) * 0.25 + 1))
    fig, ax = plt.subplots(figsize=figsize)
    sns.heatmap(
        data,
        cmap="viridis",
        ax=ax,
        cbar_kws={"label": r"$\log_2$ ODID"},
    )
    ax.set_xlabel("Timepoint")
    ax.set_ylabel("")
    ax.set_yticklabels(ax.get_yticklabels(), fontsize=7)
    if title:
        ax.set_title(title)

    fig.tight_layout()
    _save(fig, outpath, dpi)
    return fig, ax, data
