# utils.py
# By Carter Clinton, Ph.D.
"""Shared helpers: QIIME2 table I/O, metadata loading, taxonomy parsing, transforms."""

import csv

import numpy as np
import pandas as pd

RANKS = ["Kingdom", "Phylum", "Class", "Order", "Family", "Genus", "Species"]
RANK_PREFIXES = {"k": 0, "d": 0, "p": 1, "c": 2, "o": 3, "f": 4, "g": 5, "s": 6}


def read_qiime_tsv(table_tsv, keep_taxonomy=False):
    """
    Load a QIIME2-exported feature table (TSV) as a taxa x samples count matrix.
    Handles the common "# Constructed..." preamble that biom adds so that the header
    row beginning with "#OTU ID" is preserved rather than discarded as a comment.

    With keep_taxonomy=True a trailing taxonomy column is returned as a second
    value (Series indexed by feature id, or None when the table has none).
    """
    header_tokens = (
        "#OTU ID", "#OTUID", "#OTU_ID", "#Feature ID", "#FEATURE ID",
        "feature-id", "feature id", "OTU ID", "Feature ID"
    )
    skiprows = 0
    with open(table_tsv, "r") as handle:
        for line in handle:
            stripped = line.strip()
            if not stripped:
                skiprows += 1
                continue
            if stripped.startswith("#") and not stripped.startswith(header_tokens):
                skiprows += 1
                continue
            # header row (either #OTU ID or the first non-comment line)
            break
    df = pd.read_csv(table_tsv, sep="\t", skiprows=skiprows, index_col=0,
                     dtype={0: str}, low_memory=False)
    if df.index.name:
        df.index.name = df.index.name.lstrip("#")
    df.index = df.index.astype(str)
    df.columns = [str(c).lstrip("#") for c in df.columns]

    taxonomy = None
    if len(df.columns) and df.columns[-1].lower().startswith("taxonomy"):
        taxonomy = df.iloc[:, -1].astype(str)
        df = df.iloc[:, :-1]
    df = df.apply(pd.to_numeric, errors="coerce").fillna(0)
    if keep_taxonomy:
        return df, taxonomy
    return df


def read_metadata(path):
    """Load metadata from TSV/CSV, handling trailing tabs and #-prefixed lines."""
    delimiter = "\t" if str(path).endswith((".tsv", ".txt")) else ","
    with open(path, "r", newline="") as handle:
        reader = csv.reader(handle, delimiter=delimiter)
        header = None
        rows = []
        for row in reader:
            if not row or not "".join(row).strip():
                continue
            if row[0].startswith("#") and header is not None:
                continue
            if header is None:
                if row[0].startswith("#") and row[0].lower().lstrip("#").strip() not in (
                    "sampleid", "sample-id", "sample_id", "sample id", "id"
                ):
                    continue
                header = [col.strip().lstrip("#") for col in row]
                continue
            row = row[: len(header)] + [""] * max(0, len(header) - len(row))
            rows.append(row)
    if header is None:
        raise ValueError(f"No header rows found in metadata file: {path}")
    df = pd.DataFrame(rows, columns=header)
    df = df.loc[:, df.columns != ""]
    df = df.rename(columns={df.columns[0]: "sample_id"})
    df["sample_id"] = df["sample_id"].astype(str).str.strip()
    df = df.drop_duplicates("sample_id").set_index("sample_id")
    return df


def split_lineage(taxon_str):
    """Split one lineage string into a list of seven rank labels (None if empty)."""
    labels = [None] * len(RANKS)
    parts = [p.strip() for p in str(taxon_str).split(";")]
    unprefixed = 0
    for part in parts:
        if part in ("", "Root", "Unassigned", "__"):
            continue
        if len(part) > 2 and part[1:3] == "__" and part[0].lower() in RANK_PREFIXES:
            name = part[3:].strip()
            labels[RANK_PREFIXES[part[0].lower()]] = name or None
        elif part[:3].lower() not in {f"{k}__" for k in RANK_PREFIXES}:
            # bare names are taken positionally
            if unprefixed < len(RANKS):
                labels[unprefixed] = part
            unprefixed += 1
    return labels


def parse_taxonomy(strings):
    """
    Split lineage strings into a taxa x rank table.

    Accepts Greengenes ("Root;p__..."/"k__..."), SILVA ("d__...") and bare
    semicolon-separated names.  Rank prefixes are stripped and empty levels
    such as "g__" become missing values.
    """
    strings = pd.Series(strings)
    rows = [split_lineage(s) for s in strings.values]
    return pd.DataFrame(rows, index=strings.index.astype(str), columns=RANKS)


def bh_correction(pvals):
    """Return BH-adjusted p-values (q-values) for an array of p-values."""
    pvals = np.asarray(pvals, dtype=float)
    n = len(pvals)
    if n == 0:
        return pvals.copy()
    order = np.argsort(pvals)
    ranked = np.empty_like(pvals)
    ranked[order] = np.arange(1, n + 1)
    qvals = pvals * n / ranked
    # enforce monotonicity (step-up)
    qvals[order[::-1]] = np.minimum.accumulate(qvals[order[::-1]])
    return np.clip(qvals, 0.0, 1.0)


def clr_transform(counts, pseudo=0.5):
    X = counts + pseudo
    gm = np.exp(np.log(X).mean(axis=0))  # geometric mean per sample
    return np.log(X / gm)
