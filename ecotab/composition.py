# composition.py
# By Carter Clinton, Ph.D.
"""
Taxonomic composition.

Aggregates the filtered community to a taxonomic rank, converts to relative
abundance, keeps the N most abundant taxa (the rest are pooled as "Other")
and plots stacked bars per sample and per group.

Outputs
-------
<out-dir>/composition_<rank>.tsv          top-N relative abundance per sample
<out-dir>/composition_<rank>_groups.tsv   mean composition per group
<out-dir>/composition_<rank>.png
<out-dir>/composition_<rank>_groups.png
"""

import argparse
import os
import sys

import pandas as pd

from ecotab import plots
from ecotab.community import (aggregate_rank, filter_taxa, load_community,
                              relative_abundance)


def top_taxa(community, rank=None, n=10):
    """Relative abundances of the n taxa with the highest mean, plus "Other".

    When `rank` is given, taxa are first summed at that rank.  Rows are
    ordered by decreasing mean relative abundance with "Other" last.
    """
    if n < 1:
        raise ValueError(f"n must be >= 1, got {n}")
    if rank is not None:
        community = aggregate_rank(community, rank)
    rel = relative_abundance(community).counts
    order = rel.mean(axis=1).sort_values(ascending=False).index
    top = rel.loc[order[:n]]
    if len(order) > n:
        other = rel.loc[order[n:]].sum(axis=0)
        top = pd.concat([top, other.to_frame("Other").T])
    top.index.name = rank or "taxon"
    return top


def group_means(table, metadata, column):
    """Mean composition per group; columns of `table` are sample ids."""
    labels = metadata[column].reindex(table.columns)
    return table.T.groupby(labels.values).mean().T


def parse_args(argv=None):
    p = argparse.ArgumentParser(description=__doc__,
                                formatter_class=argparse.RawDescriptionHelpFormatter)
    p.add_argument("--table", default="results/compositional/feature_table.tsv")
    p.add_argument("--metadata", default="results/metadata.tsv")
    p.add_argument("--taxonomy", default=None,
                   help="Optional QIIME taxonomy.tsv when the table has no taxonomy column.")
    p.add_argument("--rank", default="Phylum")
    p.add_argument("--top", type=int, default=10)
    p.add_argument("--min-prevalence", type=float, default=0.0)
    p.add_argument("--group-col", default="group")
    p.add_argument("--out-dir", default="results/composition/")
    return p.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    os.makedirs(args.out_dir, exist_ok=True)

    print("Loading table and metadata ...", flush=True)
    try:
        comm = load_community(args.table, args.metadata, args.taxonomy)
    except ValueError as e:
        sys.exit(f"ERROR: {e}")
    if comm.taxonomy is None:
        sys.exit("ERROR: no taxonomy found; pass --taxonomy or a table with a taxonomy column.")
    comm = filter_taxa(comm, min_prevalence=args.min_prevalence)
    print(f"  {comm.counts.shape[0]} taxa x {comm.counts.shape[1]} samples", flush=True)

    comp = top_taxa(comm, args.rank, args.top)
    tag = args.rank.lower()
    out_tsv = os.path.join(args.out_dir, f"composition_{tag}.tsv")
    comp.to_csv(out_tsv, sep="\t")
    plots.plot_composition(comp, os.path.join(args.out_dir, f"composition_{tag}.png"),
                           title=f"{args.rank} composition")
    print(f"Wrote {out_tsv}", flush=True)

    if args.group_col in comm.samples.columns:
        gm = group_means(comp, comm.samples, args.group_col)
        out_groups = os.path.join(args.out_dir, f"composition_{tag}_groups.tsv")
        gm.to_csv(out_groups, sep="\t")
        plots.plot_composition(gm, os.path.join(args.out_dir, f"composition_{tag}_groups.png"),
                               title=f"{args.rank} composition by {args.group_col}")
        print(f"Wrote {out_groups}", flush=True)
    else:
        print(f"  WARNING: metadata has no column '{args.group_col}'; "
              "skipping group means.", flush=True)

    print("\n--- Most abundant taxa (mean relative abundance) ---", flush=True)
    for taxon, val in comp.mean(axis=1).items():
        print(f"  {str(taxon):>30s}: {100 * val:.2f}%", flush=True)


if __name__ == "__main__":
    main()
