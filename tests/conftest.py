"""Shared synthetic community tables."""

import numpy as np
import pandas as pd
import pytest

LINEAGES = [
    "k__Bacteria; p__Firmicutes; c__Bacilli; o__Lactobacillales; f__; g__; s__",
    "k__Bacteria; p__Firmicutes; c__Clostridia; o__Clostridiales; f__Lachnospiraceae; g__Blautia; s__",
    "k__Bacteria; p__Firmicutes; c__Bacilli; o__Bacillales; f__Bacillaceae; g__Bacillus; s__",
    "k__Bacteria; p__Bacteroidetes; c__Bacteroidia; o__Bacteroidales; f__Bacteroidaceae; g__Bacteroides; s__",
    "k__Bacteria; p__Bacteroidetes; c__Bacteroidia; o__Bacteroidales; f__Prevotellaceae; g__Prevotella; s__",
    "k__Bacteria; p__Proteobacteria; c__Gammaproteobacteria; o__Enterobacterales; f__Enterobacteriaceae; g__Escherichia; s__coli",
    "k__Bacteria; p__Proteobacteria; c__Alphaproteobacteria; o__Rickettsiales; f__Mitochondria; g__; s__",
    "k__Bacteria; p__Cyanobacteria; c__Oxyphotobacteria; o__Chloroplast; f__; g__; s__",
    "k__Bacteria; p__Actinobacteria; c__Actinobacteria; o__Actinomycetales; f__Streptomycetaceae; g__Streptomyces; s__",
    "k__Bacteria; p__Actinobacteria; c__Actinobacteria; o__Bifidobacteriales; f__Bifidobacteriaceae; g__Bifidobacterium; s__",
]


@pytest.fixture
def counts():
    """10 taxa x 12 samples; group A samples favour the first taxa, group B the last."""
    rng = np.random.default_rng(2024)
    n_taxa = len(LINEAGES)
    lam_a = np.array([400, 250, 150, 80, 40, 20, 10, 5, 2, 1], dtype=float)
    lam_b = lam_a[::-1].copy()
    cols = {}
    for i in range(12):
        lam = lam_a if i < 6 else lam_b
        cols[f"S{i:02d}"] = rng.poisson(lam)
    return pd.DataFrame(cols, index=[f"OTU{i}" for i in range(n_taxa)])


@pytest.fixture
def metadata(counts):
    groups = ["A"] * 6 + ["B"] * 6
    return pd.DataFrame(
        {"group": groups, "ph": np.linspace(5.5, 7.7, 12).round(2)},
        index=pd.Index(counts.columns, name="sample_id"),
    )


@pytest.fixture
def lineage(counts):
    return pd.Series(LINEAGES, index=counts.index)


@pytest.fixture
def table_path(tmp_path, counts, lineage):
    """QIIME/biom TSV export with preamble and trailing taxonomy column."""
    path = tmp_path / "feature_table.tsv"
    df = counts.copy()
    df["taxonomy"] = lineage
    with open(path, "w") as handle:
        handle.write("# Constructed from biom file\n")
        handle.write("#OTU ID\t" + "\t".join(df.columns) + "\n")
        for otu, row in df.iterrows():
            handle.write(otu + "\t" + "\t".join(str(v) for v in row.values) + "\n")
    return path


@pytest.fixture
def metadata_path(tmp_path, metadata):
    """QIIME2 metadata TSV with a #q2:types directive row."""
    path = tmp_path / "metadata.tsv"
    with open(path, "w") as handle:
        handle.write("#SampleID\tgroup\tph\n")
        handle.write("#q2:types\tcategorical\tnumeric\n")
        for sid, row in metadata.iterrows():
            handle.write(f"{sid}\t{row['group']}\t{row['ph']}\n")
    return path
