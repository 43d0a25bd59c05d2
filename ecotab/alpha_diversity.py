# alpha_diversity.py
# By Carter Clinton, Ph.D.
"""
Compute alpha diversity metrics for a community table.

Reads the count table (QIIME format), computes per-sample alpha-diversity
metrics (Observed, Shannon H', Simpson 1-D, inverse Simpson, Chao1, Pielou's
evenness), merges with sample metadata, then runs Kruskal-Wallis (global) and
pairwise Mann-Whitney U tests with Benjamini-Hochberg correction and Cliff's
delta effect sizes.

Outputs
-------
<out-dir>/alpha_values.tsv   per-sample diversity values + group label
<out-dir>/alpha_stats.tsv    statistical test results
"""

import argparse
import itertools
import os
import sys
import warnings

import numpy as np
import pandas as pd
from scipy import stats

from ecotab.community import load_community
from ecotab.utils import bh_correction

# ---------------------------------------------------------------------------
# Alpha-diversity functions (operate on a 1-D array of raw counts)
# ---------------------------------------------------------------------------

def shannon(counts):
    """Shannon entropy H' (natural log)."""
    counts = np.asarray(counts, dtype=float)
    if counts.sum() <= 0:
        return np.nan
    p = counts[counts > 0] / counts.sum()
    return -np.sum(p * np.log(p))


def simpson(counts):
    """Simpson diversity index (1 - D)."""
    counts = np.asarray(counts, dtype=float)
    if counts.sum() <= 0:
        return np.nan
    p = counts[counts > 0] / counts.sum()
    return 1.0 - np.sum(p ** 2)


def invsimpson(counts):
    """Inverse Simpson index (1 / D)."""
    counts = np.asarray(counts, dtype=float)
    if counts.sum() <= 0:
        return np.nan
    p = counts[counts > 0] / counts.sum()
    return 1.0 / np.sum(p ** 2)


def chao1(counts):
    """Chao1 richness estimator."""
    counts = np.asarray(counts)
    s_obs = np.sum(counts > 0)
    f1 = np.sum(counts == 1)
    f2 = max(np.sum(counts == 2), 1)  # avoid division by zero
    return s_obs + (f1 ** 2) / (2 * f2)


def observed(counts):
    """Number of observed taxa (count > 0)."""
    return int(np.sum(np.asarray(counts) > 0))


def pielou(counts):
    """Pielou's evenness J = H' / ln(S)."""
    s = observed(counts)
    if s < 2:
        return np.nan
    return shannon(counts) / np.log(s)


METRICS = {
    "observed": observed,
    "shannon": shannon,
    "simpson": simpson,
    "invsimpson": invsimpson,
    "chao1": chao1,
    "pielou": pielou,
}


def check_metrics(metrics):
    """Return metric names as a list, raising on unknown names."""
    metrics = [metrics] if isinstance(metrics, str) else list(metrics)
    unknown = [m for m in metrics if m not in METRICS]
    if unknown:
        raise ValueError(f"Unknown metric(s) {unknown}. Choose from {sorted(METRICS)}.")
    if not metrics:
        raise ValueError("At least one alpha-diversity metric is required.")
    return metrics


def alpha_table(counts, metrics=("observed", "shannon", "simpson", "chao1")):
    """Compute alpha diversity for every sample column of a taxa x samples table."""
    metrics = check_metrics(metrics)
    values = counts.values.astype(float)
    results = {m: np.empty(values.shape[1]) for m in metrics}
    for i in range(values.shape[1]):
        for m in metrics:
            results[m][i] = METRICS[m](values[:, i])
    out = pd.DataFrame(results, index=counts.columns)
    out.index.name = "sample_id"
    return out


# ---------------------------------------------------------------------------
# Cliff's delta effect size
# ---------------------------------------------------------------------------

def cliffs_delta(x, y):
    """
    Compute Cliff's delta, a non-parametric effect size measure.
    Values range from -1 to 1.  |d| < 0.147 negligible, < 0.33 small,
    < 0.474 medium, otherwise large  (Romano et al. 2006).
    """
    x = np.asarray(x, dtype=float)
    y = np.asarray(y, dtype=float)
    n_x, n_y = len(x), len(y)
    if n_x == 0 or n_y == 0:
        return np.nan
    diff = np.sign(x[:, None] - y[None, :])
    return diff.sum() / (n_x * n_y)


# ---------------------------------------------------------------------------
# Group comparisons
# ---------------------------------------------------------------------------

def compare_groups(values, groups, metrics):
    """
    Kruskal-Wallis across all groups and pairwise Mann-Whitney U per metric.

    Parameters
    ----------
    values : DataFrame
        Samples x metric columns.
    groups : Series
        Group label per sample id (aligned on the index of `values`).
    metrics : list of str
        Columns of `values` to test.

    Returns
    -------
    DataFrame with one row per test: metric, test, comparison, stat, p_value,
    q_value, effect_size, mean1, mean2.  Pairwise q-values are BH-corrected
    within each metric, Kruskal-Wallis q-values across metrics.
    """
    groups = groups.reindex(values.index)
    labels = sorted(groups.dropna().unique())
    stat_rows = []

    for mname in metrics:
        series = values[mname]
        samples = {g: series[(groups == g).values].dropna().values for g in labels}
        present = [g for g in labels if len(samples[g]) > 0]
        for g in labels:
            if len(samples[g]) == 0:
                print(f"  WARNING: group {g} has 0 samples for {mname}, skipping.", flush=True)

        if len(present) >= 2:
            all_vals = np.concatenate([samples[g] for g in present])
            if np.ptp(all_vals) == 0:
                H, p = np.nan, np.nan
            else:
                H, p = stats.kruskal(*[samples[g] for g in present])
            stat_rows.append({
                "metric": mname,
                "test": "kruskal_wallis",
                "comparison": "all_groups",
                "stat": H,
                "p_value": p,
                "q_value": np.nan,   # filled after BH
                "effect_size": np.nan,
                "mean1": np.nan,
                "mean2": np.nan,
            })

        for g1, g2 in itertools.combinations(present, 2):
            x, y = samples[g1], samples[g2]
            U, p = stats.mannwhitneyu(x, y, alternative="two-sided")
            stat_rows.append({
                "metric": mname,
                "test": "mann_whitney_u",
                "comparison": f"{g1}_vs_{g2}",
                "stat": U,
                "p_value": p,
                "q_value": np.nan,
                "effect_size": cliffs_delta(x, y),
                "mean1": x.mean(),
                "mean2": y.mean(),
            })

    columns = ["metric", "test", "comparison", "stat", "p_value", "q_value",
               "effect_size", "mean1", "mean2"]
    stats_df = pd.DataFrame(stat_rows, columns=columns)
    if stats_df.empty:
        return stats_df

    for mname in metrics:
        mask = (stats_df["metric"] == mname) & (stats_df["test"] == "mann_whitney_u")
        mask &= stats_df["p_value"].notna()
        if mask.sum() == 0:
            continue
        stats_df.loc[mask, "q_value"] = bh_correction(stats_df.loc[mask, "p_value"].values)

    kw_mask = (stats_df["test"] == "kruskal_wallis") & stats_df["p_value"].notna()
    if kw_mask.sum() > 0:
        stats_df.loc[kw_mask, "q_value"] = bh_correction(
            stats_df.loc[kw_mask, "p_value"].values
        )
    return stats_df


def print_summary(values, groups, stats_df, metrics):
    """Print group means, Kruskal-Wallis results and significant pairs."""
    labels = sorted(groups.dropna().unique())
    print("\n--- Group means ---", flush=True)
    for mname in metrics:
        print(f"\n  {mname}:", flush=True)
        for g in labels:
            vals = values.loc[(groups == g).values, mname]
            print(f"    {g:>10s}: mean={vals.mean():.4f}  sd={vals.std():.4f}  n={len(vals)}", flush=True)

    if stats_df.empty:
        return
    print("\n--- Kruskal-Wallis ---", flush=True)
    for _, row in stats_df[stats_df["test"] == "kruskal_wallis"].iterrows():
        print(f"  {row['metric']:>10s}: H={row['stat']:.2f}  p={row['p_value']:.2e}  q={row['q_value']:.2e}", flush=True)

    print("\n--- Significant pairwise tests (q < 0.05) ---", flush=True)
    sig = stats_df[(stats_df["test"] == "mann_whitney_u") & (stats_df["q_value"] < 0.05)]
    if len(sig) == 0:
        print("  (none)", flush=True)
    else:
        for _, row in sig.iterrows():
            print(
                f"  {row['metric']:>10s} | {row['comparison']:>20s} | "
                f"U={row['stat']:.0f}  q={row['q_value']:.2e}  "
                f"delta={row['effect_size']:.3f}",
                flush=True,
            )


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def parse_args(argv=None):
    parser = argparse.ArgumentParser(
        description="Compute alpha diversity and run group comparisons."
    )
    parser.add_argument(
        "--table",
        default="results/community/filtered_counts.tsv",
        help="QIIME-format count table (taxa x samples).",
    )
    parser.add_argument(
        "--metadata",
        default="results/metadata.tsv",
        help="Metadata TSV; first column is the sample id.",
    )
    parser.add_argument("--group-col", default="group",
                        help="Metadata column holding the sample grouping.")
    parser.add_argument("--metrics", nargs="+",
                        default=["observed", "shannon", "simpson", "chao1"],
                        choices=sorted(METRICS))
    parser.add_argument(
        "--out-dir",
        default="results/alpha_diversity/",
        help="Output directory for result files.",
    )
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
    n_taxa, n_samp = comm.counts.shape
    print(f"  {n_samp} samples in both table and metadata ({n_taxa} taxa).", flush=True)
    if args.group_col not in comm.samples.columns:
        sys.exit(f"ERROR: metadata has no column '{args.group_col}'.")

    print(f"Computing alpha diversity for {n_samp} samples ...", flush=True)
    alpha_df = alpha_table(comm.counts, args.metrics)
    groups = comm.samples[args.group_col]
    alpha_df.insert(0, args.group_col, groups.values)

    out_values = os.path.join(args.out_dir, "alpha_values.tsv")
    alpha_df.to_csv(out_values, sep="\t")
    print(f"Wrote {out_values} ({len(alpha_df)} rows).", flush=True)

    print("Running Kruskal-Wallis and pairwise Mann-Whitney U tests ...", flush=True)
    stats_df = compare_groups(alpha_df, groups, args.metrics)
    out_stats = os.path.join(args.out_dir, "alpha_stats.tsv")
    stats_df.to_csv(out_stats, sep="\t", index=False)
    print(f"Wrote {out_stats} ({len(stats_df)} rows).", flush=True)

    print_summary(alpha_df, groups, stats_df, args.metrics)
    print("\nDone.", flush=True)


if __name__ == "__main__":
    main()
