# community.py
# By Carter Clinton, Ph.D.
"""
Build the merged community object.

Joins a QIIME-format count table (taxa x samples), the sample metadata and,
when available, the taxonomy lineage into one Community record, then applies
the standard taxon filters (all-zero taxa, prevalence / count thresholds and
excluded lineages such as chloroplasts and mitochondria).

Outputs
-------
<out-dir>/filtered_counts.tsv   filtered taxa x samples counts
<out-dir>/taxonomy.tsv          parsed taxonomy ranks (when present)
<out-dir>/community_long.tsv    one row per (sample, taxon) with metadata
"""

import argparse
import os
import sys
from collections import namedtuple

import numpy as np
import pandas as pd

from ecotab.utils import RANKS, parse_taxonomy, read_metadata, read_qiime_tsv

Community = namedtuple("Community", ["counts", "samples", "taxonomy"])


def merge_community(counts, metadata, taxonomy=None):
    """Restrict counts and metadata to their shared samples and bundle them.

    Parameters
    ----------
    counts : DataFrame
        Taxa (rows) x samples (columns) count table.
    metadata : DataFrame
        Sample metadata indexed by sample id.
    taxonomy : DataFrame, optional
        Taxa x rank table; reindexed to the count table's taxa.

    Returns
    -------
    Community
    """
    common = sorted(set(counts.columns.astype(str)) & set(metadata.index.astype(str)))
    if len(common) == 0:
        raise ValueError("No overlapping sample IDs between table and metadata.")
    counts = counts.copy()
    counts.columns = counts.columns.astype(str)
    metadata = metadata.copy()
    metadata.index = metadata.index.astype(str)
    if taxonomy is not None:
        taxonomy = taxonomy.reindex(counts.index)
    return Community(counts[common], metadata.loc[common], taxonomy)


def sample_sums(community):
    return community.counts.sum(axis=0)


def taxa_sums(community):
    return community.counts.sum(axis=1)


def _keep_taxa(community, mask):
    counts = community.counts.loc[mask]
    taxonomy = community.taxonomy
    if taxonomy is not None:
        taxonomy = taxonomy.loc[counts.index]
    return Community(counts, community.samples, taxonomy)


def prune_samples(community, keep):
    """Keep only the given samples (list of ids or boolean Series over samples)."""
    if isinstance(keep, pd.Series) and keep.dtype == bool:
        keep = keep[keep].index.tolist()
    wanted = set(keep)
    keep = [s for s in community.counts.columns if s in wanted]
    return Community(community.counts[keep], community.samples.loc[keep],
                     community.taxonomy)


def filter_taxa(community, min_count=1, min_prevalence=0.0, min_total=0):
    """Drop rare taxa.

    A taxon is kept when its count is >= min_count in at least a
    min_prevalence fraction of samples and its total count is >= min_total.
    Taxa that are zero in every sample are always removed.
    """
    counts = community.counts
    n_samp = counts.shape[1]
    if n_samp == 0:
        return community
    prevalence = (counts >= min_count).sum(axis=1) / n_samp
    totals = counts.sum(axis=1)
    mask = (prevalence >= min_prevalence) & (totals >= min_total) & (totals > 0)
    return _keep_taxa(community, mask)


def subset_taxa(community, rank, exclude):
    """Remove taxa whose label at `rank` is one of `exclude` (case-insensitive)."""
    if community.taxonomy is None:
        raise ValueError("Community has no taxonomy; cannot subset by rank.")
    if rank not in community.taxonomy.columns:
        raise ValueError(f"Unknown rank '{rank}'. Choose from {list(community.taxonomy.columns)}.")
    drop = {str(x).lower() for x in exclude}
    labels = community.taxonomy[rank].fillna("").astype(str).str.lower()
    return _keep_taxa(community, ~labels.isin(drop).values)


def relative_abundance(community):
    """Per-sample proportions; empty samples stay at zero."""
    totals = community.counts.sum(axis=0)
    safe = totals.where(totals > 0, 1.0)
    rel = community.counts.div(safe, axis=1)
    return Community(rel, community.samples, community.taxonomy)


def aggregate_rank(community, rank):
    """Sum counts of taxa sharing the same label at `rank`."""
    if community.taxonomy is None:
        raise ValueError("Community has no taxonomy; cannot aggregate by rank.")
    labels = community.taxonomy[rank].fillna("Unassigned").replace("", "Unassigned")
    grouped = community.counts.groupby(labels.values).sum()
    grouped.index.name = rank
    taxonomy = pd.DataFrame({rank: grouped.index}, index=grouped.index)
    return Community(grouped, community.samples, taxonomy)


def melt(community):
    """Long table: one row per (sample, taxon), with taxonomy and metadata joined."""
    counts = community.counts.copy()
    counts.index.name = "taxon"
    long = counts.reset_index().melt(id_vars="taxon", var_name="sample_id",
                                     value_name="abundance")
    if community.taxonomy is not None:
        tax = community.taxonomy.copy()
        tax.index.name = "taxon"
        long = long.merge(tax.reset_index(), on="taxon", how="left")
    meta = community.samples.copy()
    meta.index.name = "sample_id"
    long = long.merge(meta.reset_index(), on="sample_id", how="left")
    return long


def load_community(table_path, metadata_path, taxonomy_path=None):
    """Read table, metadata and lineage and return the merged Community."""
    table, lineage = read_qiime_tsv(table_path, keep_taxonomy=True)
    if taxonomy_path:
        tax_df = pd.read_csv(taxonomy_path, sep="\t", dtype=str, index_col=0)
        tax_col = [c for c in tax_df.columns if c.lower().startswith("taxon")]
        lineage = tax_df[tax_col[0] if tax_col else tax_df.columns[0]]
    taxonomy = parse_taxonomy(lineage) if lineage is not None else None
    meta = read_metadata(metadata_path)
    return merge_community(table, meta, taxonomy)


def parse_args(argv=None):
    p = argparse.ArgumentParser(description=__doc__,
                                formatter_class=argparse.RawDescriptionHelpFormatter)
    p.add_argument("--table", default="results/compositional/feature_table.tsv",
                   help="QIIME-format count table (taxa x samples).")
    p.add_argument("--metadata", default="results/metadata.tsv",
                   help="Sample metadata TSV (first column is the sample id).")
    p.add_argument("--taxonomy", default=None,
                   help="Optional QIIME taxonomy.tsv (Feature ID, Taxon).")
    p.add_argument("--min-count", type=int, default=1)
    p.add_argument("--min-prevalence", type=float, default=0.0,
                   help="Fraction of samples where a taxon must reach --min-count.")
    p.add_argument("--min-total", type=int, default=0)
    p.add_argument("--exclude", nargs="*", default=[],
                   help="RANK:LABEL pairs to drop, e.g. Order:Chloroplast Family:Mitochondria")
    p.add_argument("--out-dir", default="results/community/")
    return p.parse_args(argv)


def main(argv=None):
    args = parse_args(argv)
    os.makedirs(args.out_dir, exist_ok=True)

    print("Loading table and metadata ...", flush=True)
    try:
        comm = load_community(args.table, args.metadata, args.taxonomy)
    except ValueError as e:
        sys.exit(f"ERROR: {e}")
    n_taxa, n_samp = comm.counts.shape
    print(f"  {n_taxa} taxa x {n_samp} samples after merging with metadata.", flush=True)

    for entry in args.exclude:
        if ":" not in entry:
            sys.exit(f"ERROR: --exclude expects RANK:LABEL, got '{entry}'.")
        rank, label = entry.split(":", 1)
        if comm.taxonomy is None:
            print(f"  WARNING: no taxonomy available, ignoring {entry}", flush=True)
            continue
        before = comm.counts.shape[0]
        comm = subset_taxa(comm, rank, [label])
        print(f"  Removed {before - comm.counts.shape[0]} taxa with {rank} = {label}", flush=True)

    comm = filter_taxa(comm, min_count=args.min_count,
                       min_prevalence=args.min_prevalence, min_total=args.min_total)
    print(f"  {comm.counts.shape[0]} taxa pass the abundance/prevalence filter.", flush=True)

    depths = sample_sums(comm)
    print(f"  Sample depth: min={depths.min():.0f}  median={np.median(depths):.0f}  "
          f"max={depths.max():.0f}", flush=True)

    out_counts = os.path.join(args.out_dir, "filtered_counts.tsv")
    comm.counts.to_csv(out_counts, sep="\t")
    print(f"Wrote {out_counts}", flush=True)

    if comm.taxonomy is not None:
        out_tax = os.path.join(args.out_dir, "taxonomy.tsv")
        comm.taxonomy[RANKS].to_csv(out_tax, sep="\t")
        print(f"Wrote {out_tax}", flush=True)

    out_long = os.path.join(args.out_dir, "community_long.tsv")
    long = melt(comm)
    long.to_csv(out_long, sep="\t", index=False)
    print(f"Wrote {out_long} ({len(long)} rows).", flush=True)


if __name__ == "__main__":
    main()
