from __future__ import annotations

from pathlib import Path

import numpy as np
import pytest

from coevo_stats import infectivity, resistance


@pytest.fixture
def infection_csv(tmp_path: Path, infection_wide) -> Path:
    path = tmp_path / "infectivity_matrix.csv"
    infection_wide.to_csv(path, index=False)
    return path


@pytest.fixture
def resistance_csv(tmp_path: Path, resistance_wide) -> Path:
    path = tmp_path / "resistance.csv"
    resistance_wide.to_csv(path, index=False)
    return path


@pytest.fixture
def density_csv(tmp_path: Path, density_wide) -> Path:
    path = tmp_path / "densities.csv"
    density_wide.to_csv(path, index=False)
    return path


def test_infectivity_pipeline_writes_tables(tmp_path: Path, infection_csv: Path) -> None:
    out_dir = tmp_path / "outputs"
    tables = infectivity.analyze_infectivity(infection_csv, out_dir)

    # two untested cells are dropped
    assert len(tables["long"]) == 72 * 3 - 2
    assert {"past", "contemporary", "future"} == set(tables["summary"]["time_shift_class"])

    gof = tables["goodness_of_fit"].set_index("metric")["value"]
    assert 0 <= float(gof["auc"]) <= 1
    assert "glmm_dispersion_ratio" in gof.index

    selection = tables["model_selection"]
    assert selection["step"].iloc[0] == 1
    assert selection["term"].iloc[0] == "C(treatment):C(time_shift_class)"

    for name in tables:
        assert (out_dir / f"infectivity_{name}.csv").exists()
    assert (out_dir / "infectivity_matrix_heatmap.png").exists()
    assert (out_dir / "infectivity_time_shift.png").exists()


def test_infectivity_contrasts_are_adjusted(tmp_path: Path, infection_csv: Path) -> None:
    tables = infectivity.analyze_infectivity(infection_csv, tmp_path / "out", lrt_alpha=1.0)
    contrasts = tables["tukey_contrasts"]

    # full model retained: both families present
    assert set(contrasts["family"]) == {"time_shift_class | treatment",
                                        "treatment | time_shift_class"}
    assert (contrasts["p_tukey"] >= contrasts["p_value"] - 1e-12).all()
    assert (contrasts["q_value"] >= contrasts["p_tukey"] - 1e-12).all()
    # 2 treatments x 3 contrasts of time shift + 3 time classes x 1 treatment contrast
    assert len(contrasts) == 9


def test_treatment_tests_by_transfer(infection_wide) -> None:
    from coevo_stats import reshape

    long_df = reshape.infection_long(infection_wide)
    tests = infectivity.treatment_tests_by_transfer(long_df)
    assert list(tests["bacteria_transfer"]) == [2, 4, 6]
    assert (tests["test"] == "fisher_exact").all()
    assert {"proportion_control", "proportion_H2O2"} <= set(tests.columns)
    assert (tests["q_value"] >= tests["p_value"]).all()


def test_infectivity_main_missing_file(tmp_path: Path) -> None:
    with pytest.raises(SystemExit, match="input file not found"):
        infectivity.main(["--data-dir", str(tmp_path)])


def test_infectivity_main(tmp_path: Path, infection_csv: Path, capsys) -> None:
    out_dir = tmp_path / "cli"
    infectivity.main(["--matrix", str(infection_csv), "--out-dir", str(out_dir)])
    assert "ANALYSIS COMPLETE!" in capsys.readouterr().out
    assert (out_dir / "infectivity_coefficients.csv").exists()


def test_resistance_pipeline_with_densities(tmp_path: Path, resistance_csv: Path,
                                            density_csv: Path) -> None:
    out_dir = tmp_path / "outputs"
    tables = resistance.analyze_resistance(resistance_csv, density_csv, out_dir)

    trajectories = tables["resistance_trajectories"]
    assert set(trajectories["transfer"]) == {1, 3, 5, 7}
    assert (trajectories["n_populations"] == 3).all()
    assert trajectories["mean_proportion"].between(0, 1).all()

    gof = tables["resistance_goodness_of_fit"].set_index("metric")["value"]
    assert "hosmer_lemeshow_p" in gof.index
    assert "resistance_glmm" in tables

    assert set(tables["density_diagnostics"]["organism"]) == {"bacteria", "phage"}
    assert set(tables["density_selection"]["organism"]) == {"bacteria", "phage"}
    assert (out_dir / "density_bacteria_trajectories.png").exists()
    assert (out_dir / "density_phage_trajectories.png").exists()
    assert (out_dir / "resistance_trajectories.png").exists()
    assert (out_dir / "resistance_coefficients.csv").exists()


def test_resistance_pipeline_without_densities(tmp_path: Path, resistance_csv: Path,
                                               capsys) -> None:
    tables = resistance.analyze_resistance(resistance_csv, tmp_path / "missing.csv",
                                           tmp_path / "out")
    assert not any(name.startswith("density_") for name in tables)
    assert "density analysis skipped" in capsys.readouterr().out


def test_resistance_full_model_contrasts(tmp_path: Path, resistance_csv: Path) -> None:
    tables = resistance.analyze_resistance(resistance_csv, None, tmp_path / "out",
                                           lrt_alpha=1.0)
    contrasts = tables["resistance_tukey_contrasts"]
    # one treatment contrast per transfer
    assert sorted(contrasts["transfer"]) == [1, 3, 5, 7]
    np.testing.assert_allclose(contrasts["p_tukey"], contrasts["p_value"])
    emm = tables["resistance_emmeans"]
    assert len(emm) == 8
    assert emm["response"].between(0, 1).all()


def test_resistance_main(tmp_path: Path, resistance_csv: Path, density_csv: Path) -> None:
    out_dir = tmp_path / "cli"
    resistance.main(["--resistance", str(resistance_csv), "--densities", str(density_csv),
                     "--out-dir", str(out_dir), "--fdr-alpha", "0.1"])
    assert (out_dir / "density_contrasts.csv").exists()
    assert (out_dir / "resistance_model_selection.csv").exists()


def _snapshot(root: Path, skip: Path) -> dict:
    return {
        path: path.stat().st_mtime_ns
        for path in root.rglob("*")
        if path.is_file() and skip not in path.parents
    }


def test_cli_runs_write_only_into_output_directory(tmp_path: Path, infection_csv: Path,
                                                   resistance_csv: Path, density_csv: Path,
                                                   monkeypatch) -> None:
    monkeypatch.chdir(tmp_path)
    out_dir = tmp_path / "results"
    before = _snapshot(tmp_path, out_dir)

    infectivity.main(["--matrix", str(infection_csv), "--out-dir", str(out_dir)])
    resistance.main(["--resistance", str(resistance_csv), "--densities", str(density_csv),
                     "--out-dir", str(out_dir)])

    assert _snapshot(tmp_path, out_dir) == before
    assert any(out_dir.glob("infectivity_*.csv"))
    assert any(out_dir.glob("resistance_*.csv"))
    assert any(out_dir.glob("density_*.png"))


def test_parse_args_defaults() -> None:
    args = infectivity.parse_args([])
    assert args.fdr_alpha == 0.05
    assert args.lrt_alpha == 0.05
    # both analyses are deterministic and take no seed
    assert not hasattr(args, "seed")
    with pytest.raises(SystemExit):
        resistance.parse_args(["--seed", "1"])
