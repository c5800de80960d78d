from __future__ import annotations

import numpy as np
import pandas as pd
import pytest
from scipy.special import logit
from statsmodels.stats.multitest import multipletests

from coevo_stats import models, posthoc, reshape


def test_bh_adjust_matches_statsmodels() -> None:
    p = [0.01, 0.04, 0.03, 0.2, 0.5]
    q, reject = posthoc.bh_adjust(p, alpha=0.05)
    expected_reject, expected_q, _, _ = multipletests(p, alpha=0.05, method="fdr_bh")
    np.testing.assert_allclose(q, expected_q)
    assert reject.tolist() == expected_reject.tolist()


def test_bh_adjust_keeps_nan_out_of_family() -> None:
    q, reject = posthoc.bh_adjust([0.01, np.nan, 0.04])
    assert np.isnan(q[1])
    assert not reject[1]
    _, expected_q, _, _ = multipletests([0.01, 0.04], method="fdr_bh")
    np.testing.assert_allclose(q[[0, 2]], expected_q)


def test_bh_adjust_is_monotone_and_bounded(rng) -> None:
    p = rng.uniform(size=50)
    q, _ = posthoc.bh_adjust(p)
    order = np.argsort(p)
    assert (np.diff(q[order]) >= -1e-12).all()
    assert (q >= p).all()
    assert (q <= 1).all()


def test_adjust_families_is_per_family() -> None:
    df = pd.DataFrame({"family": ["a", "a", "b"], "p": [0.01, 0.04, 0.04]})
    out = posthoc.adjust_families(df, "p", "family")
    assert out.loc[2, "q_value"] == pytest.approx(0.04)
    assert out.loc[1, "q_value"] == pytest.approx(0.04)
    assert out.loc[0, "q_value"] == pytest.approx(0.02)
    assert "q_value" not in df.columns


def test_reference_grid_levels(binary_two_factor) -> None:
    result = models.fit_glm("y ~ C(a) + C(b)", binary_two_factor)
    grid = posthoc.reference_grid(result, "a")
    assert len(grid) == 6
    assert sorted(grid["a"].unique()) == ["a1", "a2", "a3"]


def test_reference_grid_unknown_factor(binary_two_factor) -> None:
    result = models.fit_glm("y ~ C(a)", binary_two_factor)
    with pytest.raises(ValueError, match="Not in model"):
        posthoc.reference_grid(result, "b")


def test_emms_of_one_factor_model_are_group_proportions(binary_two_factor) -> None:
    result = models.fit_glm("y ~ C(a)", binary_two_factor)
    emm = posthoc.estimated_marginal_means(result, "a").set_index("a")
    observed = binary_two_factor.groupby("a")["y"].mean()

    np.testing.assert_allclose(emm.loc[observed.index, "response"], observed, rtol=1e-6)
    assert (emm["response_lower"] < emm["response"]).all()
    assert (emm["response"] < emm["response_upper"]).all()


def test_emms_average_over_other_factor_on_link_scale(binary_two_factor) -> None:
    result = models.fit_glm("y ~ C(a) * C(b)", binary_two_factor)
    emm = posthoc.estimated_marginal_means(result, "a").set_index("a")

    cells = binary_two_factor.groupby(["a", "b"])["y"].mean()
    expected = logit(cells).groupby(level="a").mean()
    np.testing.assert_allclose(emm.loc[expected.index, "estimate"], expected, rtol=1e-6)


def test_emms_by_factor(binary_two_factor) -> None:
    result = models.fit_glm("y ~ C(a) * C(b)", binary_two_factor)
    emm = posthoc.estimated_marginal_means(result, "a", by="b")
    assert len(emm) == 6
    assert list(emm.columns[:2]) == ["a", "b"]


def test_pairwise_tukey(binary_two_factor) -> None:
    result = models.fit_glm("y ~ C(a) + C(b)", binary_two_factor)
    contrasts = posthoc.pairwise_tukey(result, "a")

    assert len(contrasts) == 3
    assert (contrasts["n_levels"] == 3).all()
    assert (contrasts["p_tukey"] >= contrasts["p_value"]).all()
    assert (contrasts["p_tukey"] <= 1).all()
    np.testing.assert_allclose(contrasts["odds_ratio"], np.exp(contrasts["estimate"]))
    # a1 has the lowest infection probability
    first = contrasts.set_index("contrast").loc["a1 - a3"]
    assert first["estimate"] < 0
    assert first["p_tukey"] < 0.001


def test_pairwise_tukey_two_levels_is_unadjusted(binary_two_factor) -> None:
    result = models.fit_glm("y ~ C(a) * C(b)", binary_two_factor)
    contrasts = posthoc.pairwise_tukey(result, "b", by="a")
    assert len(contrasts) == 3
    assert set(contrasts["a"]) == {"a1", "a2", "a3"}
    np.testing.assert_allclose(contrasts["p_tukey"], contrasts["p_value"])


def test_emms_of_empty_cell_are_not_estimable(binary_empty_cell) -> None:
    result = models.fit_glm("y ~ C(a) * C(b)", binary_empty_cell)

    cells = posthoc.estimated_marginal_means(result, "a", by="b").set_index(["a", "b"])
    assert len(cells) == 9
    assert not cells.loc[("a3", "b3"), "estimable"]
    empty = cells.loc[("a3", "b3"), ["estimate", "std_error", "response"]]
    assert np.isnan(empty.astype(float)).all()
    observed = cells.drop(index=("a3", "b3"))
    assert observed["estimable"].all()
    assert np.isfinite(observed["estimate"]).all()

    # averaging a3 over b needs the empty cell
    means = posthoc.estimated_marginal_means(result, "a").set_index("a")
    assert means["estimable"].to_dict() == {"a1": True, "a2": True, "a3": False}
    assert np.isnan(means.loc["a3", "estimate"])


def test_pairwise_tukey_skips_empty_cell(binary_empty_cell) -> None:
    result = models.fit_glm("y ~ C(a) * C(b)", binary_empty_cell)
    contrasts = posthoc.pairwise_tukey(result, "a", by="b")

    assert len(contrasts) == 7
    in_b3 = contrasts[contrasts["b"] == "b3"]
    assert in_b3["contrast"].tolist() == ["a1 - a2"]
    assert (in_b3["n_levels"] == 2).all()
    assert np.isfinite(contrasts["estimate"]).all()


def test_emms_for_mixed_model(density_wide) -> None:
    long_df = reshape.density_long(density_wide)
    sub = long_df[long_df["organism"] == "bacteria"].reset_index(drop=True)
    result = models.fit_lmm("log10_density ~ C(treatment) + C(transfer)", sub,
                            groups="population")

    emm = posthoc.estimated_marginal_means(result, "treatment")
    assert set(emm["treatment"]) == {"control", "H2O2"}
    np.testing.assert_allclose(emm["response"], emm["estimate"])

    contrasts = posthoc.pairwise_tukey(result, "treatment", by="transfer")
    assert len(contrasts) == 5
    assert "odds_ratio" not in contrasts.columns
    # the additive model gives the same treatment contrast at every transfer
    np.testing.assert_allclose(contrasts["estimate"], contrasts["estimate"].iloc[0])
