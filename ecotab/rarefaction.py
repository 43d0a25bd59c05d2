# rarefaction.py
# By Carter Clinton, Ph.D.
"""
Alpha diversity by repeated rarefaction.

Subsamples every sample of the count table to an even depth (by default the
smallest library size, drawing reads with replacement), computes alpha
diversity on the rarefied table, and repeats this N times.  Per-sample mean
and standard deviation across iterations are reported for each metric and
merged with the sample metadata; groups are then compared on the per-sample
means.  Samples below the rarefaction depth are dropped.

Outputs
-------
<out-dir>/rarefied_iterations.tsv     one row per (iteration, sample)
<out-dir>/rarefied_alpha_summary.tsv  per-sample mean / sd + metadata
<out-dir>/rarefied_alpha_stats.tsv    group comparisons on the means
<out-dir>/rarefied_<metric>.png       per-group plots of the means
<out-dir>/rarefaction_curves.{tsv,png} (with --curves)
"""

import argparse
import os
import sys
import warnings

import numpy as np
import pandas as pd

from ecotab import plots
from ecotab.alpha_diversity import METRICS, check_metrics, compare_groups, print_summary
from ecotab.community import load_community

DEFAULT_METRICS = ("observed", "invsimpson")


def validate_counts(counts):
    """Return the table as an int64 array, rejecting values that are not read counts."""
    if counts.shape[0] == 0 or counts.shape[1] == 0:
        raise ValueError("Count table is empty.")
    try:
        values = counts.values.astype(float)
    except (TypeError, ValueError):
        raise ValueError("Count table contains non-numeric values.")
    if not np.all(np.isfinite(values)):
        raise ValueError("Count table contains missing or infinite values.")
    if (values < 0).any():
        raise ValueError("Count table contains negative counts.")
    if not np.all(values == np.round(values)):
        raise ValueError("Count table contains non-integer counts; rarefy raw read counts.")
    return values.astype(np.int64)


def rarefy(counts, depth, rng, replace=True):
    """Rarefy a single sample (1-D array) to a given depth.

    With replacement each of the `depth` reads is drawn independently with
    probability proportional to the observed counts (multinomial); without
    replacement reads are drawn from the observed pool (multivariate
    hypergeometric).  Returns None if the sample's total count is below
    `depth` or zero.
    """
    counts = np.asarray(counts, dtype=np.int64)
    total = counts.sum()
    if total == 0 or total < depth:
        return None
    if replace:
        return rng.multinomial(depth, counts / total)
    return rng.multivariate_hypergeometric(counts, depth)


def resolve_depth(values, depth=None):
    """Default to the smallest non-zero library size; validate an explicit depth."""
    totals = values.sum(axis=0)
    if depth is None:
        nonzero = totals[totals > 0]
        if len(nonzero) == 0:
            raise ValueError("All samples have zero counts.")
        return int(nonzero.min())
    if int(depth) != depth or depth < 1:
        raise ValueError(f"Rarefaction depth must be a positive integer, got {depth}.")
    if depth > totals.max():
        raise ValueError(
            f"Rarefaction depth {depth} exceeds every sample total (max {int(totals.max())})."
        )
    return int(depth)


def _rarefy_columns(values, depth, rng, replace):
    out = np.empty_like(values)
    for j in range(values.shape[1]):
        out[:, j] = rarefy(values[:, j], depth, rng, replace)
    return out


def rarefy_even_depth(counts, depth=None, seed=None, replace=True, trim_taxa=True):
    """Rarefy all samples in a taxa x samples DataFrame to the same depth.

    Parameters
    ----------
    counts : DataFrame
        Taxa (rows) x samples (columns) raw counts.
    depth : int, optional
        Reads per sample; defaults to the smallest non-zero sample total.
    seed : int or numpy Generator, optional
    replace : bool
        Draw reads with replacement (default) or without.
    trim_taxa : bool
        Remove taxa that are absent from every rarefied sample.

    Returns
    -------
    (DataFrame, list) : rarefied counts and the ids of dropped samples.
    """
    values = validate_counts(counts)
    depth = resolve_depth(values, depth)
    rng = np.random.default_rng(seed)

    totals = values.sum(axis=0)
    keep = totals >= depth
    dropped = [sid for sid, k in zip(counts.columns, keep) if not k]
    if dropped:
        print(f"  Dropped {len(dropped)} samples below depth {depth}", flush=True)

    rarefied = pd.DataFrame(
        _rarefy_columns(values[:, keep], depth, rng, replace),
        index=counts.index, columns=counts.columns[keep],
    )
    if trim_taxa:
        rarefied = rarefied.loc[rarefied.sum(axis=1) > 0]
    return rarefied, dropped


def repeated_rarefaction(counts, n_iter=100, depth=None, metrics=DEFAULT_METRICS,
                         seed=None, replace=True, verbose=True):
    """Estimate alpha diversity by rarefying the table `n_iter` times.

    Every iteration rarefies all retained samples to the same depth and
    computes each metric on the rarefied counts.  The retained sample set is
    fixed up front, so every sample appears exactly once per iteration.

    Returns
    -------
    DataFrame with columns iteration (1-based), sample_id and one column per
    metric.  ``attrs`` carries the depth used and the dropped sample ids.
    """
    metrics = check_metrics(metrics)
    if int(n_iter) != n_iter or n_iter < 1:
        raise ValueError(f"Number of iterations must be a positive integer, got {n_iter}.")
    n_iter = int(n_iter)
    values = validate_counts(counts)
    depth = resolve_depth(values, depth)

    totals = values.sum(axis=0)
    keep = totals >= depth
    sample_ids = list(counts.columns[keep])
    dropped = [sid for sid, k in zip(counts.columns, keep) if not k]
    if verbose and dropped:
        print(f"  Dropped {len(dropped)} samples below depth {depth}", flush=True)
    kept = values[:, keep]

    rng = np.random.default_rng(seed)
    results = {m: np.empty((n_iter, len(sample_ids))) for m in metrics}
    report_interval = max(n_iter // 10, 1)
    for it in range(n_iter):
        rarefied = _rarefy_columns(kept, depth, rng, replace)
        for j in range(rarefied.shape[1]):
            for m in metrics:
                results[m][it, j] = METRICS[m](rarefied[:, j])
        if verbose and (it + 1) % report_interval == 0:
            print(f"  completed {it + 1}/{n_iter} iterations", flush=True)

    out = pd.DataFrame({
        "iteration": np.repeat(np.arange(1, n_iter + 1), len(sample_ids)),
        "sample_id": np.tile(np.asarray(sample_ids, dtype=object), n_iter),
    })
    for m in metrics:
        out[m] = results[m].ravel()
    out.attrs["depth"] = depth
    out.attrs["dropped"] = dropped
    return out


def summarize_iterations(iterations, metrics=None):
    """Per-sample mean and sample standard deviation (ddof=1) of each metric.

    The sd is NaN when only one iteration was run.
    """
    if metrics is None:
        metrics = [c for c in iterations.columns if c not in ("iteration", "sample_id")]
    grouped = iterations.groupby("sample_id", sort=False)
    summary = pd.DataFrame(index=pd.Index(grouped.size().index, name="sample_id"))
    for m in metrics:
        summary[f"{m}_mean"] = grouped[m].mean()
        summary[f"{m}_sd"] = grouped[m].std(ddof=1)
    summary["n_iter"] = grouped["iteration"].nunique()
    return summary


def rarefaction_curve(counts, depths=None, n_iter=10, seed=None, metric="observed",
                      replace=False, n_steps=20):
    """Metric as a function of subsampling depth, per sample.

    Each sample is evaluated only at depths up to its own total (the total
    itself is always included).  Returns a long DataFrame with sample_id,
    depth, mean and sd.
    """
    check_metrics([metric])
    values = validate_counts(counts)
    totals = values.sum(axis=0)
    if depths is None:
        top = int(totals.max())
        depths = np.unique(np.linspace(1, max(top, 1), n_steps).astype(int))
    depths = sorted({int(d) for d in depths if d >= 1})
    rng = np.random.default_rng(seed)

    rows = []
    for j, sid in enumerate(counts.columns):
        total = int(totals[j])
        if total == 0:
            continue
        sample_depths = [d for d in depths if d < total] + [total]
        for d in sample_depths:
            vals = [METRICS[metric](rarefy(values[:, j], d, rng, replace)) for _ in range(n_iter)]
            rows.append({
                "sample_id": sid,
                "depth": d,
                "mean": float(np.mean(vals)),
                "sd": float(np.std(vals, ddof=1)) if n_iter > 1 else np.nan,
            })
    return pd.DataFrame(rows, columns=["sample_id", "depth", "mean", "sd"])


def parse_args(argv=None):
    parser = argparse.ArgumentParser(description=__doc__,
                                     formatter_class=argparse.RawDescriptionHelpFormatter)
    parser.add_argument("--table", default="results/community/filtered_counts.tsv",
                        help="QIIME-format count table (taxa x samples).")
    parser.add_argument("--metadata", default="results/metadata.tsv",
                        help="Metadata TSV; first column is the sample id.")
    parser.add_argument("--group-col", default="group",
                        help="Metadata column used for group comparisons and plots.")
    parser.add_argument("--depth", type=int, default=None,
                        help="Rarefaction depth (default: smallest library size).")
    parser.add_argument("--n-iter", type=int, default=100,
                        help="Number of rarefaction iterations.")
    parser.add_argument("--metrics", nargs="+", default=list(DEFAULT_METRICS),
                        choices=sorted(METRICS))
    parser.add_argument("--without-replacement", action="store_true",
                        help="Subsample reads without replacement.")
    parser.add_argument("--curves", action="store_true",
                        help="Also compute and plot rarefaction curves.")
    parser.add_argument("--seed", type=int, default=42,
                        help="Random seed for reproducibility")
    parser.add_argument("--out-dir", default="results/rarefaction/")
    return parser.parse_args(argv)


def main(argv=None):
    warnings.filterwarnings("ignore", category=RuntimeWarning)
    args = parse_args(argv)
    os.makedirs(args.out_dir, exist_ok=True)

    print("Loading table and metadata ...", flush=True)
    try:
        comm = load_community(args.table, args.metadata)
    except ValueError as e:
        sys.exit(f"ERROR: {e}")
    print(f"  Table shape: {comm.counts.shape[0]} taxa x {comm.counts.shape[1]} samples", flush=True)

    print(f"Rarefying {args.n_iter} times "
          f"({'without' if args.without_replacement else 'with'} replacement) ...", flush=True)
    try:
        iterations = repeated_rarefaction(
            comm.counts, n_iter=args.n_iter, depth=args.depth, metrics=args.metrics,
            seed=args.seed, replace=not args.without_replacement,
        )
    except ValueError as e:
        sys.exit(f"ERROR: {e}")
    depth = iterations.attrs["depth"]
    print(f"  Depth = {depth} reads; "
          f"{iterations['sample_id'].nunique()} samples retained", flush=True)

    out_iter = os.path.join(args.out_dir, "rarefied_iterations.tsv")
    iterations.to_csv(out_iter, sep="\t", index=False)
    print(f"Wrote {out_iter} ({len(iterations)} rows).", flush=True)

    summary = summarize_iterations(iterations, args.metrics)
    summary["depth"] = depth
    overlap = summary.columns.intersection(comm.samples.columns)
    if len(overlap):
        print(f"  WARNING: metadata columns {list(overlap)} renamed with suffix _meta", flush=True)
    summary = summary.join(comm.samples, how="left", rsuffix="_meta")
    out_summary = os.path.join(args.out_dir, "rarefied_alpha_summary.tsv")
    summary.to_csv(out_summary, sep="\t")
    print(f"Wrote {out_summary} ({len(summary)} rows).", flush=True)

    mean_cols = [f"{m}_mean" for m in args.metrics]
    if args.group_col in summary.columns:
        groups = summary[args.group_col]
        stats_df = compare_groups(summary, groups, mean_cols)
        out_stats = os.path.join(args.out_dir, "rarefied_alpha_stats.tsv")
        stats_df.to_csv(out_stats, sep="\t", index=False)
        print(f"Wrote {out_stats} ({len(stats_df)} rows).", flush=True)
        print_summary(summary, groups, stats_df, mean_cols)
        for m in args.metrics:
            out_png = os.path.join(args.out_dir, f"rarefied_{m}.png")
            plots.plot_alpha(summary, groups, m, out_png)
            print(f"Wrote {out_png}", flush=True)
    else:
        print(f"  WARNING: metadata has no column '{args.group_col}'; "
              "skipping group comparisons.", flush=True)

    if args.curves:
        print("Computing rarefaction curves ...", flush=True)
        curves = rarefaction_curve(comm.counts, n_iter=10, seed=args.seed)
        out_curves = os.path.join(args.out_dir, "rarefaction_curves.tsv")
        curves.to_csv(out_curves, sep="\t", index=False)
        plots.plot_rarefaction_curves(curves, os.path.join(args.out_dir, "rarefaction_curves.png"),
                                      depth=depth)
        print(f"Wrote {out_curves}", flush=True)

    print("\nDone.", flush=True)


if __name__ == "__main__":
    main()
