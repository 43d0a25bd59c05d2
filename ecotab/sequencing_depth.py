# sequencing_depth.py
# By Carter Clinton, Ph.D.
"""
Sequencing Depth Distribution

Per-group library-size statistics, used to choose a rarefaction depth and to
see how many samples each candidate depth would drop.

Inputs:
  count table (QIIME format, taxa x samples)
  sample metadata TSV

Outputs:
  <out-dir>/depth_distribution.tsv
  <out-dir>/depth_summary.tsv
  <out-dir>/depth_histogram.png
"""

import argparse
import os
import sys

import pandas as pd

from ecotab import plots
from ecotab.community import load_community, sample_sums


def depth_summary(counts, metadata, column, thresholds=(500, 1000)):
    """Per-sample depth table and per-group summary statistics.

    Returns (distribution, summary).  `summary` holds n_samples, mean,
    median, sd, min, max, q25, q75 and one below_<t> count per threshold.
    """
    depths = counts.sum(axis=0)
    labels = metadata[column].reindex(depths.index)
    dist_df = pd.DataFrame({
        "sample_id": depths.index,
        column: labels.values,
        "depth": depths.values.astype(int),
    })

    summary_rows = []
    for group in sorted(dist_df[column].dropna().unique()):
        group_depths = dist_df.loc[dist_df[column] == group, "depth"]
        row = {
            column: group,
            "n_samples": len(group_depths),
            "mean": group_depths.mean(),
            "median": group_depths.median(),
            "sd": group_depths.std(),
            "min": group_depths.min(),
            "max": group_depths.max(),
            "q25": group_depths.quantile(0.25),
            "q75": group_depths.quantile(0.75),
        }
        for t in thresholds:
            row[f"below_{t}"] = int((group_depths < t).sum())
        summary_rows.append(row)
    return dist_df, pd.DataFrame(summary_rows)


def parse_args(argv=None):
    p = argparse.ArgumentParser(description=__doc__,
                                formatter_class=argparse.RawDescriptionHelpFormatter)
    p.add_argument("--table", default="results/community/filtered_counts.tsv")
    p.add_argument("--metadata", default="results/metadata.tsv")
    p.add_argument("--group-col", default="group")
    p.add_argument("--thresholds", type=int, nargs="+", default=[500, 1000],
                   help="Candidate rarefaction depths to report drop counts for.")
    p.add_argument("--out-dir", default="results/sequencing_depth/")
    return p.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    os.makedirs(args.out_dir, exist_ok=True)

    print("Loading table and metadata...")
    try:
        comm = load_community(args.table, args.metadata)
    except ValueError as e:
        sys.exit(f"ERROR: {e}")
    if args.group_col not in comm.samples.columns:
        sys.exit(f"ERROR: metadata has no column '{args.group_col}'.")

    dist_df, summary_df = depth_summary(comm.counts, comm.samples, args.group_col,
                                        args.thresholds)
    dist_path = os.path.join(args.out_dir, "depth_distribution.tsv")
    dist_df.to_csv(dist_path, sep="\t", index=False)
    print(f"  Wrote {dist_path} ({len(dist_df)} samples)")

    summary_path = os.path.join(args.out_dir, "depth_summary.tsv")
    summary_df.to_csv(summary_path, sep="\t", index=False)
    print(f"  Wrote {summary_path}")

    plots.plot_depths(sample_sums(comm), comm.samples[args.group_col],
                      os.path.join(args.out_dir, "depth_histogram.png"),
                      threshold=min(args.thresholds))

    print("\n=== Sequencing Depth Summary ===")
    low = f"below_{min(args.thresholds)}"
    for _, row in summary_df.iterrows():
        print(f"  {row[args.group_col]}: n={row['n_samples']}, "
              f"median={row['median']:.0f}, range=[{row['min']:.0f}-{row['max']:.0f}], "
              f"<{min(args.thresholds)}: {row[low]}")


if __name__ == "__main__":
    main()
