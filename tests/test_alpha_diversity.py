"""Tests for alpha-diversity metrics and group comparisons."""

import numpy as np
import pandas as pd
import pytest

from ecotab.alpha_diversity import (alpha_table, chao1, check_metrics, cliffs_delta,
                                    compare_groups, invsimpson, main, observed, pielou,
                                    shannon, simpson)


class TestMetrics:

    def test_even_community(self):
        x = np.array([2, 2, 2, 2])
        assert observed(x) == 4
        assert shannon(x) == pytest.approx(np.log(4))
        assert simpson(x) == pytest.approx(0.75)
        assert invsimpson(x) == pytest.approx(4.0)
        assert chao1(x) == pytest.approx(4.0)
        assert pielou(x) == pytest.approx(1.0)

    def test_chao1_singletons(self):
        # S_obs = 3, f1 = 2, f2 = 1
        assert chao1(np.array([1, 1, 2, 0])) == pytest.approx(5.0)

    def test_single_taxon(self):
        x = np.array([0, 10, 0])
        assert observed(x) == 1
        assert shannon(x) == pytest.approx(0.0)
        assert simpson(x) == pytest.approx(0.0)
        assert invsimpson(x) == pytest.approx(1.0)
        assert np.isnan(pielou(x))

    def test_empty_sample(self):
        x = np.zeros(4)
        assert observed(x) == 0
        assert np.isnan(shannon(x))
        assert np.isnan(invsimpson(x))

    def test_unknown_metric(self):
        with pytest.raises(ValueError, match="Unknown metric"):
            check_metrics(["observed", "faith_pd"])


class TestAlphaTable:

    def test_shape_and_values(self, counts):
        table = alpha_table(counts, ["observed", "shannon"])
        assert list(table.columns) == ["observed", "shannon"]
        assert list(table.index) == list(counts.columns)
        assert table.loc["S00", "observed"] == (counts["S00"] > 0).sum()
        assert table.loc["S03", "shannon"] == pytest.approx(shannon(counts["S03"].values))


class TestCliffsDelta:

    def test_complete_separation(self):
        assert cliffs_delta([3, 4], [1, 2]) == pytest.approx(1.0)
        assert cliffs_delta([1, 2], [3, 4]) == pytest.approx(-1.0)

    def test_identical(self):
        assert cliffs_delta([1, 2, 3], [1, 2, 3]) == pytest.approx(0.0)

    def test_empty(self):
        assert np.isnan(cliffs_delta([], [1]))


class TestCompareGroups:

    def test_rows_and_columns(self):
        values = pd.DataFrame(
            {"observed": [10, 11, 12, 20, 21, 22, 30, 31, 32]},
            index=[f"s{i}" for i in range(9)],
        )
        groups = pd.Series(list("AAABBBCCC"), index=values.index)
        res = compare_groups(values, groups, ["observed"])
        assert list(res["test"]) == ["kruskal_wallis"] + ["mann_whitney_u"] * 3
        assert list(res["comparison"][1:]) == ["A_vs_B", "A_vs_C", "B_vs_C"]
        pairwise = res[res["test"] == "mann_whitney_u"]
        assert (pairwise["effect_size"] == -1.0).all()
        assert pairwise["q_value"].notna().all()
        assert res.loc[0, "p_value"] < 0.05

    def test_constant_values(self):
        values = pd.DataFrame({"observed": [5.0] * 4}, index=list("abcd"))
        groups = pd.Series(list("AABB"), index=values.index)
        res = compare_groups(values, groups, ["observed"])
        assert np.isnan(res.loc[0, "stat"])
        assert len(res) == 2

    def test_group_without_values_skipped(self, capsys):
        counts = pd.DataFrame(
            {"a1": [4, 3, 1], "a2": [2, 5, 2], "b1": [6, 1, 3], "b2": [3, 3, 3],
             "c1": [9, 0, 0], "c2": [0, 7, 0]},
            index=["x", "y", "z"],
        )
        values = alpha_table(counts, ["pielou"])
        groups = pd.Series(["A", "A", "B", "B", "C", "C"], index=values.index)
        res = compare_groups(values, groups, ["pielou"])
        assert "group C has 0 samples for pielou" in capsys.readouterr().out
        assert list(res["test"]) == ["kruskal_wallis", "mann_whitney_u"]
        assert list(res["comparison"]) == ["all_groups", "A_vs_B"]


class TestMain:

    def test_writes_outputs(self, tmp_path, table_path, metadata_path):
        out = tmp_path / "alpha"
        main(["--table", str(table_path), "--metadata", str(metadata_path),
              "--out-dir", str(out), "--metrics", "observed", "shannon"])
        values = pd.read_csv(out / "alpha_values.tsv", sep="\t", index_col=0)
        assert list(values.columns) == ["group", "observed", "shannon"]
        stats_df = pd.read_csv(out / "alpha_stats.tsv", sep="\t")
        assert set(stats_df["test"]) == {"kruskal_wallis", "mann_whitney_u"}

    def test_missing_group_column(self, tmp_path, table_path, metadata_path):
        with pytest.raises(SystemExit):
            main(["--table", str(table_path), "--metadata", str(metadata_path),
                  "--group-col", "site", "--out-dir", str(tmp_path / "a")])
