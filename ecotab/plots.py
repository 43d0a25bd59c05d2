# plots.py
# By Carter Clinton, Ph.D.
"""Figures for composition, alpha diversity, rarefaction curves and ordinations."""

import os

import matplotlib

matplotlib.use("Agg")
import matplotlib.pyplot as plt
import numpy as np


def _save(fig, path):
    out_dir = os.path.dirname(path)
    if out_dir:
        os.makedirs(out_dir, exist_ok=True)
    fig.savefig(path, dpi=150, bbox_inches="tight")
    plt.close(fig)
    return path


def _colors(labels):
    cmap = plt.get_cmap("tab20" if len(labels) > 10 else "tab10")
    return {lab: cmap(i % cmap.N) for i, lab in enumerate(labels)}


def plot_composition(table, path, title="Relative abundance", ylabel="Relative abundance"):
    """Stacked bars: rows of `table` are taxa, columns are samples or groups."""
    fig, ax = plt.subplots(figsize=(max(6, 0.35 * table.shape[1] + 3), 5))
    colors = _colors(list(table.index))
    bottom = np.zeros(table.shape[1])
    x = np.arange(table.shape[1])
    for taxon, row in table.iterrows():
        color = "lightgrey" if taxon == "Other" else colors[taxon]
        ax.bar(x, row.values, bottom=bottom, color=color, label=str(taxon), width=0.85)
        bottom += row.values
    ax.set_xticks(x)
    ax.set_xticklabels([str(c) for c in table.columns], rotation=90, fontsize=7)
    ax.set_ylabel(ylabel)
    ax.set_title(title)
    ax.legend(bbox_to_anchor=(1.01, 1), loc="upper left", fontsize=7, frameon=False)
    return _save(fig, path)


def plot_ordination(ordination, groups, path, title=None):
    """Scatter of the first two ordination axes, coloured by group."""
    coords = ordination.coords
    labels = groups.reindex(coords.index).fillna("NA").astype(str)
    fig, ax = plt.subplots(figsize=(6, 5))
    colors = _colors(sorted(labels.unique()))
    y_col = coords.columns[1] if coords.shape[1] > 1 else None
    for lab in sorted(labels.unique()):
        sub = coords[(labels == lab).values]
        y = sub[y_col] if y_col else np.zeros(len(sub))
        ax.scatter(sub.iloc[:, 0], y, s=25, alpha=0.8, color=colors[lab], label=lab)

    def axis_label(i):
        name = coords.columns[i]
        if ordination.explained is not None and i < len(ordination.explained):
            return f"{name} ({100 * ordination.explained[i]:.1f}%)"
        return name

    ax.set_xlabel(axis_label(0))
    if y_col:
        ax.set_ylabel(axis_label(1))
    title = title or ordination.method
    if ordination.stress is not None:
        title = f"{title}, stress = {ordination.stress:.3f}"
    ax.set_title(title)
    ax.legend(fontsize=8, frameon=False)
    return _save(fig, path)


def plot_alpha(summary, groups, metric, path):
    """Boxplot per group of a per-sample alpha metric, with jittered points.

    Uses the `<metric>_mean` column when present (repeated rarefaction
    summaries), otherwise the `metric` column itself.
    """
    col = f"{metric}_mean" if f"{metric}_mean" in summary.columns else metric
    labels = groups.reindex(summary.index).fillna("NA").astype(str)
    order = sorted(labels.unique())
    data = [summary.loc[(labels == g).values, col].dropna().values for g in order]

    fig, ax = plt.subplots(figsize=(max(4, 1.2 * len(order) + 2), 4.5))
    ax.boxplot(data, showfliers=False)
    ax.set_xticks(range(1, len(order) + 1))
    ax.set_xticklabels(order, rotation=45, ha="right")
    rng = np.random.default_rng(0)
    colors = _colors(order)
    for i, (g, vals) in enumerate(zip(order, data), start=1):
        ax.scatter(i + rng.uniform(-0.15, 0.15, len(vals)), vals, s=14,
                   alpha=0.7, color=colors[g])
    ax.set_ylabel(col)
    ax.set_title(metric)
    return _save(fig, path)


def plot_rarefaction_curves(curves, path, depth=None, ylabel="Observed taxa"):
    """One line per sample of mean metric vs depth; optional vertical depth marker."""
    fig, ax = plt.subplots(figsize=(6, 4.5))
    for sid, sub in curves.groupby("sample_id", sort=False):
        sub = sub.sort_values("depth")
        ax.plot(sub["depth"], sub["mean"], lw=1, alpha=0.8)
    if depth is not None:
        ax.axvline(depth, color="k", ls="--", lw=0.8)
    ax.set_xlabel("Reads sampled")
    ax.set_ylabel(ylabel)
    ax.set_title(f"Rarefaction curves (n = {curves['sample_id'].nunique()})")
    return _save(fig, path)


def plot_depths(depths, groups, path, threshold=None):
    """Histogram of library sizes per group."""
    labels = groups.reindex(depths.index).fillna("NA").astype(str)
    fig, ax = plt.subplots(figsize=(6, 4))
    colors = _colors(sorted(labels.unique()))
    bins = np.histogram_bin_edges(np.log10(depths[depths > 0].astype(float)), bins=30)
    for g in sorted(labels.unique()):
        vals = depths[(labels == g).values]
        vals = vals[vals > 0]
        ax.hist(np.log10(vals.astype(float)), bins=bins, alpha=0.6, color=colors[g], label=g)
    if threshold:
        ax.axvline(np.log10(threshold), color="k", ls="--", lw=0.8)
    ax.set_xlabel("log10(reads per sample)")
    ax.set_ylabel("Samples")
    ax.legend(fontsize=8, frameon=False)
    return _save(fig, path)
