"""Tests for the merged community record and taxon filters."""

import numpy as np
import pandas as pd
import pytest

from ecotab.community import (aggregate_rank, filter_taxa, load_community, main, melt,
                              merge_community, prune_samples, relative_abundance,
                              sample_sums, subset_taxa, taxa_sums)
from ecotab.utils import parse_taxonomy


@pytest.fixture
def community(counts, metadata, lineage):
    return merge_community(counts, metadata, parse_taxonomy(lineage))


class TestMerge:

    def test_shared_samples_only(self, counts, metadata):
        meta = metadata.iloc[2:].copy()
        meta.loc["EXTRA"] = ["A", 7.0]
        comm = merge_community(counts, meta)
        assert list(comm.counts.columns) == sorted(meta.index[:-1])
        assert list(comm.samples.index) == list(comm.counts.columns)
        assert comm.taxonomy is None

    def test_no_overlap_raises(self, counts):
        meta = pd.DataFrame({"group": ["A"]}, index=["nope"])
        with pytest.raises(ValueError, match="No overlapping"):
            merge_community(counts, meta)

    def test_taxonomy_aligned(self, community, counts):
        assert list(community.taxonomy.index) == list(counts.index)

    def test_sums(self, community, counts):
        np.testing.assert_array_equal(sample_sums(community).values, counts.sum(axis=0).values)
        np.testing.assert_array_equal(taxa_sums(community).values, counts.sum(axis=1).values)

    def test_load_from_files(self, table_path, metadata_path):
        comm = load_community(table_path, metadata_path)
        assert comm.counts.shape == (10, 12)
        assert comm.taxonomy.loc["OTU1", "Genus"] == "Blautia"


class TestFilters:

    def test_all_zero_taxa_dropped(self, community):
        counts = community.counts.copy()
        counts.loc["OTU3"] = 0
        comm = filter_taxa(community._replace(counts=counts))
        assert "OTU3" not in comm.counts.index
        assert "OTU3" not in comm.taxonomy.index

    def test_prevalence(self):
        counts = pd.DataFrame(
            {"a": [5, 0, 1], "b": [5, 0, 0], "c": [5, 3, 0], "d": [5, 0, 0]},
            index=["t1", "t2", "t3"],
        )
        meta = pd.DataFrame({"group": list("AABB")}, index=list("abcd"))
        comm = merge_community(counts, meta)
        kept = filter_taxa(comm, min_count=1, min_prevalence=0.5)
        assert list(kept.counts.index) == ["t1"]
        kept = filter_taxa(comm, min_count=1, min_prevalence=0.25)
        assert list(kept.counts.index) == ["t1", "t2", "t3"]
        kept = filter_taxa(comm, min_count=3, min_prevalence=0.25, min_total=3)
        assert list(kept.counts.index) == ["t1", "t2"]

    def test_subset_taxa_removes_organelles(self, community):
        comm = subset_taxa(community, "Order", ["chloroplast"])
        comm = subset_taxa(comm, "Family", ["Mitochondria"])
        assert "OTU7" not in comm.counts.index
        assert "OTU6" not in comm.counts.index
        assert comm.counts.shape[0] == 8

    def test_subset_taxa_needs_taxonomy(self, counts, metadata):
        with pytest.raises(ValueError):
            subset_taxa(merge_community(counts, metadata), "Order", ["Chloroplast"])

    def test_prune_samples(self, community):
        keep = community.samples["group"] == "B"
        comm = prune_samples(community, keep)
        assert comm.counts.shape[1] == 6
        assert set(comm.samples["group"]) == {"B"}


class TestTransforms:

    def test_relative_abundance(self, community):
        rel = relative_abundance(community).counts
        np.testing.assert_allclose(rel.sum(axis=0).values, 1.0)

    def test_relative_abundance_empty_sample(self):
        counts = pd.DataFrame({"a": [1, 3], "b": [0, 0]}, index=["t1", "t2"])
        meta = pd.DataFrame({"g": ["x", "y"]}, index=["a", "b"])
        rel = relative_abundance(merge_community(counts, meta)).counts
        assert rel["b"].sum() == 0
        assert rel.loc["t2", "a"] == pytest.approx(0.75)

    def test_aggregate_rank(self, community, counts):
        phyla = aggregate_rank(community, "Phylum")
        assert set(phyla.counts.index) == {
            "Firmicutes", "Bacteroidetes", "Proteobacteria", "Cyanobacteria", "Actinobacteria"
        }
        firm = counts.loc[["OTU0", "OTU1", "OTU2"]].sum(axis=0)
        np.testing.assert_array_equal(phyla.counts.loc["Firmicutes"].values, firm.values)
        np.testing.assert_array_equal(phyla.counts.sum(axis=0).values, counts.sum(axis=0).values)

    def test_aggregate_unassigned(self, community):
        genera = aggregate_rank(community, "Genus")
        assert "Unassigned" in genera.counts.index

    def test_melt(self, community):
        long = melt(community)
        assert len(long) == 10 * 12
        assert {"taxon", "sample_id", "abundance", "Phylum", "group"} <= set(long.columns)
        row = long[(long["taxon"] == "OTU0") & (long["sample_id"] == "S00")].iloc[0]
        assert row["abundance"] == community.counts.loc["OTU0", "S00"]
        assert row["group"] == "A"


class TestMain:

    def test_writes_outputs(self, tmp_path, table_path, metadata_path):
        out = tmp_path / "community"
        main(["--table", str(table_path), "--metadata", str(metadata_path),
              "--exclude", "Order:Chloroplast", "--out-dir", str(out)])
        filtered = pd.read_csv(out / "filtered_counts.tsv", sep="\t", index_col=0)
        assert "OTU7" not in filtered.index
        assert (out / "taxonomy.tsv").exists()
        assert (out / "community_long.tsv").exists()

    def test_bad_exclude_exits(self, tmp_path, table_path, metadata_path):
        with pytest.raises(SystemExit):
            main(["--table", str(table_path), "--metadata", str(metadata_path),
                  "--exclude", "Chloroplast", "--out-dir", str(tmp_path / "x")])
