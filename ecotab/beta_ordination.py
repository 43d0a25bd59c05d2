# beta_ordination.py
# By Carter Clinton, Ph.D.
"""
Beta-Diversity Ordination & PERMANOVA

Computes a between-sample distance matrix (Bray-Curtis, Jaccard or
Aitchison), an ordination (PCoA, NMDS or CAP/db-RDA), and group tests
(PERMANOVA/adonis with pairwise follow-ups, PERMDISP, ANOSIM).

Inputs:
  - count table (QIIME format, taxa x samples)
  - sample metadata TSV

Outputs:
  - <out-dir>/distance_matrix.tsv
  - <out-dir>/<method>_coordinates.tsv
  - <out-dir>/permanova.tsv
  - <out-dir>/permanova_pairwise.tsv
  - <out-dir>/permdisp.tsv
  - <out-dir>/anosim.tsv
  - <out-dir>/<method>_<metric>.png
"""

import argparse
import inspect
import itertools
import os
import sys
import warnings
from collections import namedtuple

import numpy as np
import pandas as pd
from scipy.spatial.distance import pdist, squareform
from skbio import DistanceMatrix
from skbio.stats.distance import anosim, permanova, permdisp
from skbio.stats.ordination import pcoa, rda
from sklearn.manifold import MDS

from ecotab import plots
from ecotab.community import load_community
from ecotab.utils import bh_correction, clr_transform

DISTANCE_METRICS = ("braycurtis", "jaccard", "aitchison")
ORDINATION_METHODS = ("PCoA", "NMDS", "CAP")

Ordination = namedtuple("Ordination", ["method", "coords", "explained", "stress"])


# ---------------------------------------------------------------------------
# Distances
# ---------------------------------------------------------------------------

def distance_matrix(counts, metric="braycurtis"):
    """Compute a sample distance matrix from a taxa x samples table.

    Bray-Curtis is computed on relative abundances (TSS), Jaccard on
    presence/absence and Aitchison as Euclidean distance between CLR
    profiles (pseudo-count 0.5).  Samples with zero total counts are
    dropped.  Returns a skbio DistanceMatrix.
    """
    if metric not in DISTANCE_METRICS:
        raise ValueError(f"Unknown distance metric '{metric}'. Choose from {DISTANCE_METRICS}.")
    if (counts.values < 0).any():
        raise ValueError("Count table contains negative counts.")
    col_sums = counts.sum(axis=0)
    nonzero = col_sums[col_sums > 0].index.tolist()
    if len(nonzero) < counts.shape[1]:
        print(f"  Dropped {counts.shape[1] - len(nonzero)} samples with zero counts", flush=True)
    if len(nonzero) < 2:
        raise ValueError("At least two non-empty samples are needed for a distance matrix.")
    sub = counts[nonzero].T.astype(float)  # samples x taxa

    if metric == "braycurtis":
        rel = sub.div(sub.sum(axis=1), axis=0)
        condensed = pdist(rel.values, metric="braycurtis")
    elif metric == "jaccard":
        condensed = pdist(sub.values > 0, metric="jaccard")
    else:
        clr_data = clr_transform(sub.T, pseudo=0.5)
        condensed = pdist(clr_data.T.values, metric="euclidean")

    # NaN (e.g. two empty profiles) is treated as maximally different
    condensed = np.where(np.isnan(condensed), 1.0, condensed)
    return DistanceMatrix(squareform(condensed), ids=[str(s) for s in nonzero])


# ---------------------------------------------------------------------------
# Ordination
# ---------------------------------------------------------------------------

def _nmds(dm, n_axes, seed):
    # scikit-learn >= 1.8 renamed metric -> metric_mds and dissimilarity -> metric
    params = inspect.signature(MDS).parameters
    if "metric_mds" in params:
        kwargs = {"metric_mds": False, "metric": "precomputed"}
    else:
        kwargs = {"metric": False, "dissimilarity": "precomputed"}
    mds = MDS(n_components=n_axes, n_init=4, max_iter=300, random_state=seed, **kwargs)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=FutureWarning)
        coords = mds.fit_transform(dm.data)
    cols = [f"NMDS{i + 1}" for i in range(n_axes)]
    return pd.DataFrame(coords, index=list(dm.ids), columns=cols), float(mds.stress_)


def _constraint_matrix(metadata, ids, constraints):
    """Numeric design matrix for CAP; non-numeric columns are dummy-coded."""
    if not constraints:
        raise ValueError("CAP needs at least one constraining metadata column.")
    missing = [c for c in constraints if c not in metadata.columns]
    if missing:
        raise ValueError(f"Constraint column(s) not in metadata: {missing}")
    X = metadata.loc[ids, list(constraints)].copy()
    parts = []
    for col in constraints:
        numeric = pd.to_numeric(X[col], errors="coerce")
        if numeric.notna().all():
            parts.append(numeric.rename(col).astype(float))
        else:
            parts.append(pd.get_dummies(X[col].astype(str), prefix=col,
                                        drop_first=True, dtype=float))
    design = pd.concat(parts, axis=1)
    if design.shape[1] == 0:
        raise ValueError("Constraints have a single level; nothing to constrain on.")
    return design


def ordinate(dm, method="PCoA", n_axes=2, seed=None, metadata=None, constraints=None):
    """Ordinate a DistanceMatrix.

    PCoA and CAP report the proportion of variance explained per axis; NMDS
    reports Kruskal stress instead.  CAP (vegan capscale) is PCoA followed by
    redundancy analysis of the principal coordinates on the `constraints`
    columns of `metadata`.
    """
    if method not in ORDINATION_METHODS:
        raise ValueError(f"Unknown ordination method '{method}'. Choose from {ORDINATION_METHODS}.")
    ids = list(dm.ids)
    n_axes = min(n_axes, len(ids) - 1) if len(ids) > 1 else 1

    if method == "NMDS":
        coords, stress = _nmds(dm, n_axes, seed)
        return Ordination(method, coords, None, stress)

    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        pc = pcoa(dm)

    if method == "PCoA":
        coords = pc.samples.iloc[:, :n_axes].copy()
        coords.index = ids
        explained = np.asarray(pc.proportion_explained.iloc[:n_axes], dtype=float)
        return Ordination(method, coords, explained, None)

    if metadata is None:
        raise ValueError("CAP needs sample metadata.")
    positive = np.asarray(pc.eigvals > 1e-10)
    Y = pc.samples.loc[:, positive].copy()
    Y.index = ids
    X = _constraint_matrix(metadata, ids, constraints)
    X.index = ids
    res = rda(Y, X, scale_Y=False, scaling=1)
    n_axes = min(n_axes, res.samples.shape[1])
    coords = res.samples.iloc[:, :n_axes].copy()
    coords.index = ids
    coords.columns = [f"CAP{i + 1}" for i in range(n_axes)]
    explained = np.asarray(res.proportion_explained.iloc[:n_axes], dtype=float)
    return Ordination(method, coords, explained, None)


# ---------------------------------------------------------------------------
# Group tests
# ---------------------------------------------------------------------------

def _grouping(dm, metadata, column):
    """Restrict dm to samples with a non-empty label; return (dm, labels in dm order)."""
    if column not in metadata.columns:
        raise ValueError(f"Metadata has no column '{column}'.")
    labels = metadata[column].reindex(list(dm.ids))
    labels = labels[labels.notna() & (labels.astype(str).str.strip() != "")]
    valid = labels.index.tolist()
    if len(valid) < len(dm.ids):
        dm = dm.filter(valid)
    return dm, labels.loc[list(dm.ids)].astype(str)


def adonis(dm, metadata, column, permutations=999):
    """PERMANOVA (vegan adonis) of `column`; R2 derived from the pseudo-F."""
    dm, grouping = _grouping(dm, metadata, column)
    result = permanova(dm, grouping, permutations=permutations)
    F = result["test statistic"]
    k = result["number of groups"]
    N = result["sample size"]
    R2 = F * (k - 1) / (F * (k - 1) + (N - k))
    return {
        "test": "permanova",
        "grouping": column,
        "n_samples": N,
        "n_groups": k,
        "pseudo_F": F,
        "R2": R2,
        "p_value": result["p-value"],
        "permutations": permutations,
    }


def pairwise_adonis(dm, metadata, column, permutations=999, min_samples=4):
    """PERMANOVA for every pair of groups, BH-adjusted across pairs."""
    dm, grouping = _grouping(dm, metadata, column)
    labels = sorted(grouping.unique())
    rows = []
    for g1, g2 in itertools.combinations(labels, 2):
        pair_ids = grouping.index[grouping.isin([g1, g2])].tolist()
        if len(pair_ids) < min_samples:
            print(f"  Skipping pairwise {g1} vs {g2}: only {len(pair_ids)} samples", flush=True)
            continue
        pair_dm = dm.filter(pair_ids)
        res = adonis(pair_dm, metadata, column, permutations=permutations)
        rows.append({
            "comparison": f"{g1}_vs_{g2}",
            "n_samples": res["n_samples"],
            "pseudo_F": res["pseudo_F"],
            "R2": res["R2"],
            "p_value": res["p_value"],
        })
    df = pd.DataFrame(rows, columns=["comparison", "n_samples", "pseudo_F", "R2", "p_value"])
    df["p_BH"] = bh_correction(df["p_value"].values) if len(df) else []
    return df


def dispersion(dm, metadata, column, permutations=999, test="median"):
    """PERMDISP (vegan betadisper) via scikit-bio."""
    dm, grouping = _grouping(dm, metadata, column)
    with warnings.catch_warnings():
        warnings.simplefilter("ignore", category=RuntimeWarning)
        result = permdisp(dm, grouping, test=test, permutations=permutations)
    return {
        "test": "permdisp",
        "grouping": column,
        "n_samples": result["sample size"],
        "n_groups": result["number of groups"],
        "F": result["test statistic"],
        "p_value": result["p-value"],
        "permutations": permutations,
    }


def anosim_test(dm, metadata, column, permutations=999):
    """ANOSIM via scikit-bio."""
    dm, grouping = _grouping(dm, metadata, column)
    result = anosim(dm, grouping, permutations=permutations)
    return {
        "test": "anosim",
        "grouping": column,
        "n_samples": result["sample size"],
        "n_groups": result["number of groups"],
        "R": result["test statistic"],
        "p_value": result["p-value"],
        "permutations": permutations,
    }


# ---------------------------------------------------------------------------
# Main
# ---------------------------------------------------------------------------

def parse_args(argv=None):
    p = argparse.ArgumentParser(description=__doc__,
                                formatter_class=argparse.RawDescriptionHelpFormatter)
    p.add_argument("--table", default="results/community/filtered_counts.tsv")
    p.add_argument("--metadata", default="results/metadata.tsv")
    p.add_argument("--group-col", default="group")
    p.add_argument("--metric", default="braycurtis", choices=DISTANCE_METRICS)
    p.add_argument("--method", default="PCoA", choices=ORDINATION_METHODS)
    p.add_argument("--constraints", nargs="*", default=None,
                   help="Metadata columns constraining CAP (default: --group-col).")
    p.add_argument("--n-axes", type=int, default=2)
    p.add_argument("--permutations", type=int, default=999)
    p.add_argument("--seed", type=int, default=42)
    p.add_argument("--out-dir", default="results/ordination/")
    return p.parse_args(argv)


def main(argv=None):
    warnings.filterwarnings("ignore", category=RuntimeWarning)
    args = parse_args(argv)
    os.makedirs(args.out_dir, exist_ok=True)

    print("Loading table and metadata...")
    try:
        comm = load_community(args.table, args.metadata)
    except ValueError as e:
        sys.exit(f"ERROR: {e}")
    print(f"  {comm.counts.shape[0]} taxa x {comm.counts.shape[1]} samples")

    print(f"Computing {args.metric} distances...")
    try:
        dm = distance_matrix(comm.counts, args.metric)
    except ValueError as e:
        sys.exit(f"ERROR: {e}")
    ids = list(dm.ids)
    pd.DataFrame(dm.data, index=ids, columns=ids).to_csv(
        os.path.join(args.out_dir, "distance_matrix.tsv"), sep="\t"
    )

    print(f"Running {args.method} ordination...")
    constraints = args.constraints or [args.group_col]
    try:
        ordn = ordinate(dm, args.method, n_axes=args.n_axes, seed=args.seed,
                        metadata=comm.samples, constraints=constraints)
    except ValueError as e:
        sys.exit(f"ERROR: {e}")
    coords = ordn.coords.copy()
    if args.group_col in comm.samples.columns:
        coords[args.group_col] = comm.samples.loc[coords.index, args.group_col].values
    coords_path = os.path.join(args.out_dir, f"{args.method.lower()}_coordinates.tsv")
    coords.to_csv(coords_path, sep="\t")
    print(f"  Wrote {coords_path} ({len(coords)} samples)")
    if ordn.explained is not None:
        pct = ", ".join(f"{c}={100 * e:.1f}%" for c, e in zip(ordn.coords.columns, ordn.explained))
        print(f"  Variance explained: {pct}")
    if ordn.stress is not None:
        print(f"  Stress: {ordn.stress:.4f}")

    if args.group_col not in comm.samples.columns:
        print(f"  WARNING: metadata has no column '{args.group_col}'; skipping group tests.")
        return

    groups = comm.samples[args.group_col]
    fig_path = os.path.join(args.out_dir, f"{args.method.lower()}_{args.metric}.png")
    plots.plot_ordination(ordn, groups, fig_path,
                          title=f"{args.method} ({args.metric})")
    print(f"  Wrote {fig_path}")

    n_groups = groups.reindex(ids).dropna().nunique()
    if n_groups < 2:
        print(f"  Only {n_groups} group(s) in '{args.group_col}'; skipping group tests.")
        return

    print(f"Running PERMANOVA ({args.permutations} permutations)...")
    glob = adonis(dm, comm.samples, args.group_col, args.permutations)
    pd.DataFrame([glob]).to_csv(os.path.join(args.out_dir, "permanova.tsv"), sep="\t", index=False)
    print(f"  PERMANOVA: R²={glob['R2']:.4f}, F={glob['pseudo_F']:.3f}, p={glob['p_value']:.4f}")

    pw_df = pairwise_adonis(dm, comm.samples, args.group_col, args.permutations)
    pw_df.to_csv(os.path.join(args.out_dir, "permanova_pairwise.tsv"), sep="\t", index=False)
    for _, row in pw_df.iterrows():
        print(f"    {row['comparison']}: R²={row['R2']:.4f}, p_BH={row['p_BH']:.4f}")

    try:
        disp = dispersion(dm, comm.samples, args.group_col, args.permutations)
    except ValueError as e:
        print(f"  Skipping PERMDISP: {e}")
    else:
        pd.DataFrame([disp]).to_csv(os.path.join(args.out_dir, "permdisp.tsv"), sep="\t", index=False)
        print(f"  PERMDISP: F={disp['F']:.4f}, p={disp['p_value']:.4f}")

    try:
        ano = anosim_test(dm, comm.samples, args.group_col, args.permutations)
    except ValueError as e:
        print(f"  Skipping ANOSIM: {e}")
    else:
        pd.DataFrame([ano]).to_csv(os.path.join(args.out_dir, "anosim.tsv"), sep="\t", index=False)
        print(f"  ANOSIM: R={ano['R']:.4f}, p={ano['p_value']:.4f}")

    print(f"\nAll ordination outputs written to {args.out_dir}")


if __name__ == "__main__":
    main()
