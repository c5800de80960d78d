#!/usr/bin/env python3
"""
Resistance evolution and population dynamics under oxidative stress.

Replicate populations were propagated with phage, with or without H2O2.
At each transfer a panel of clones was scored for resistance to the ancestral
phage, and bacterial and phage densities were counted.

Resistance (binary per clone):
    binomial GLM resistant ~ treatment x transfer, selected by sequential LRTs,
    Hosmer-Lemeshow / AUC, population GLMM with dispersion check, Tukey EMMs
Densities (log10 per ml):
    per organism LMM with a random intercept per population (ML), selected by
    sequential LRTs, residual normality, Tukey EMMs
"""
import argparse
import sys
import warnings
from functools import partial
from pathlib import Path

import numpy as np
import pandas as pd

from coevo_stats import common, models, plotting, posthoc, reshape
from coevo_stats.common import banner

# ============================================================================
# Configuration
# ============================================================================

RESISTANCE_FILE = 'resistance.csv'
DENSITY_FILE = 'densities.csv'
MODEL_FACTORS = ['treatment', 'transfer']
POPULATION = 'population'
DISPERSION_CELLS = ['population', 'transfer']


# ============================================================================
# RESISTANCE
# ============================================================================

def load_resistance(path) -> pd.DataFrame:
    banner("Step 1: Loading resistance table...")
    wide = pd.read_csv(path)
    long_df = reshape.resistance_long(wide)
    print(f"  Populations: {long_df[POPULATION].nunique()}, "
          f"transfers: {sorted(long_df['transfer'].unique())}")
    print(f"  Clones scored: {len(long_df):,}")
    return long_df


def resistance_trajectories(long_df: pd.DataFrame):
    """
    Proportion resistant per population, then mean +/- SE across populations.

    Populations are the experimental units, so the SE is taken across
    populations rather than across clones.

    Returns:
        Tuple of (per-population proportions, per-treatment trajectories)
    """
    banner("Step 2: Resistance trajectories...")
    per_population = reshape.aggregate_binary(
        long_df, ['treatment', 'transfer', POPULATION], 'resistant'
    )
    trajectories = per_population.groupby(['treatment', 'transfer']).agg(
        mean_proportion=('proportion', 'mean'),
        se=('proportion', 'sem'),
        n_populations=('proportion', 'size'),
    ).reset_index()
    trajectories['se'] = trajectories['se'].fillna(0.0)
    print(trajectories.to_string(index=False))
    return per_population, trajectories


def select_resistance_model(long_df: pd.DataFrame, lrt_alpha=common.LRT_ALPHA):
    banner("Step 3: Binomial GLM with sequential likelihood-ratio tests...")
    formula = models.factorial_formula('resistant', MODEL_FACTORS, long_df)
    print(f"  Full model: {formula}")

    selection = models.backward_select(formula, long_df, fit=models.fit_glm,
                                       alpha=lrt_alpha)
    for step in selection.steps:
        print(f"  [{step.step}] {step.term:35s} LRT={step.statistic:8.3f} "
              f"df={step.df} p={step.p_value:.4f} -> {step.action}")
    print(f"  Final model: {selection.final_formula}")
    return selection


def resistance_diagnostics(long_df: pd.DataFrame, selection, groups=common.HL_GROUPS):
    """
    Goodness of fit of the selected GLM and dispersion of the population GLMM.

    Returns:
        Tuple of (diagnostics table, Hosmer-Lemeshow result, GLMM summary or None)
    """
    banner("Step 4-5: Goodness of fit and GLMM dispersion...")
    result = selection.result
    y = long_df['resistant'].to_numpy()
    p_hat = np.asarray(result.predict())

    hl = models.hosmer_lemeshow(y, p_hat, groups=groups)
    auc = models.discrimination_auc(y, p_hat)
    glm_dispersion = models.grouped_binomial_dispersion(
        long_df, DISPERSION_CELLS, 'resistant', p_hat, models.n_parameters(result)
    )
    print(f"  Hosmer-Lemeshow: X2={hl.statistic:.3f}, df={hl.df}, p={hl.p_value:.4f}")
    print(f"  AUC: {auc:.3f}")
    print(f"  GLM dispersion (population x transfer): {glm_dispersion.ratio:.3f}")

    rows = [
        ('final_formula', selection.final_formula),
        ('n_observations', int(result.nobs)),
        ('aic', result.aic),
        ('converged', bool(result.converged)),
        ('hosmer_lemeshow_statistic', hl.statistic),
        ('hosmer_lemeshow_df', hl.df),
        ('hosmer_lemeshow_p', hl.p_value),
        ('auc', auc),
        ('glm_dispersion_ratio', glm_dispersion.ratio),
        ('glm_dispersion_p', glm_dispersion.p_value),
    ]

    glmm_table = None
    if long_df[POPULATION].nunique() > 1:
        glmm = models.fit_binomial_glmm(selection.final_formula, long_df, POPULATION)
        fitted = models.glmm_fitted_probabilities(glmm)
        glmm_dispersion = models.grouped_binomial_dispersion(
            long_df, DISPERSION_CELLS, 'resistant', fitted, models.n_parameters(glmm)
        )
        glmm_table = models.glmm_summary_table(glmm)
        print(f"  GLMM dispersion ratio: {glmm_dispersion.ratio:.3f} "
              f"(p={glmm_dispersion.p_value:.4f})")
        rows += [
            ('glmm_dispersion_ratio', glmm_dispersion.ratio),
            ('glmm_dispersion_p', glmm_dispersion.p_value),
        ]

    diagnostics = pd.DataFrame(rows, columns=['metric', 'value'])
    return diagnostics, hl, glmm_table


def treatment_contrasts(result, fdr_alpha=common.FDR_ALPHA, family=None):
    """
    Treatment EMMs within each transfer (or overall, if transfer was dropped)
    with Tukey contrasts; BH across all contrasts.

    Returns:
        Tuple of (EMM table, contrast table); empty frames when treatment is
        not in the model
    """
    variables, _ = posthoc.model_variables(result)
    if 'treatment' not in variables:
        print("  treatment not in final model, no contrasts")
        return pd.DataFrame(), pd.DataFrame()

    by = 'transfer' if 'transfer' in variables else None
    emm = posthoc.estimated_marginal_means(result, 'treatment', by=by)
    contrasts = posthoc.pairwise_tukey(result, 'treatment', by=by)
    if family is not None:
        emm.insert(0, 'family', family)
        contrasts.insert(0, 'family', family)
    contrasts = posthoc.adjust_families(contrasts, 'p_tukey', alpha=fdr_alpha)
    n_sig = int(contrasts['significant'].sum())
    print(f"  Significant treatment contrasts (BH q < {fdr_alpha}): "
          f"{n_sig}/{len(contrasts)}")
    return emm, contrasts


# ============================================================================
# DENSITIES
# ============================================================================

def load_densities(path) -> pd.DataFrame:
    banner("Step 7: Loading population densities...")
    long_df = reshape.density_long(pd.read_csv(path))
    print(f"  Organisms: {sorted(long_df['organism'].unique())}")
    print(f"  Density observations: {len(long_df):,}")
    return long_df


def density_trajectories(long_df: pd.DataFrame) -> pd.DataFrame:
    return long_df.groupby(['organism', 'treatment', 'transfer']).agg(
        mean_log10_density=('log10_density', 'mean'),
        se=('log10_density', 'sem'),
        n_populations=('log10_density', 'size'),
    ).reset_index().fillna({'se': 0.0})


def analyze_organism_density(sub: pd.DataFrame, organism: str,
                             lrt_alpha=common.LRT_ALPHA, fdr_alpha=common.FDR_ALPHA):
    """
    LMM selection, residual check and treatment contrasts for one organism.

    Returns:
        Dict with selection, coefficients, diagnostics, emmeans, contrasts
    """
    print(f"\n  --- {organism} ---")
    formula = models.factorial_formula('log10_density', MODEL_FACTORS, sub)
    fit = partial(models.fit_lmm, groups=POPULATION)
    selection = models.backward_select(formula, sub, fit=fit, alpha=lrt_alpha)
    for step in selection.steps:
        print(f"  [{step.step}] {step.term:35s} LRT={step.statistic:8.3f} "
              f"df={step.df} p={step.p_value:.4f} -> {step.action}")
    print(f"  Final model: {selection.final_formula}")

    result = selection.result
    w_stat, w_p = models.residual_normality(result)
    random_var = float(np.asarray(result.cov_re)[0, 0])
    print(f"  Population variance: {random_var:.4f}, residual variance: {result.scale:.4f}")
    print(f"  Shapiro-Wilk on residuals: W={w_stat:.3f}, p={w_p:.4f}")

    diagnostics = pd.DataFrame([
        ('final_formula', selection.final_formula),
        ('n_observations', len(sub)),
        ('log_likelihood', result.llf),
        ('converged', bool(result.converged)),
        ('population_variance', random_var),
        ('residual_variance', result.scale),
        ('shapiro_w', w_stat),
        ('shapiro_p', w_p),
    ], columns=['metric', 'value'])
    diagnostics.insert(0, 'organism', organism)

    selection_df = models.selection_table(selection)
    selection_df.insert(0, 'organism', organism)
    coefficients = models.coefficient_table(result, fdr_alpha=fdr_alpha)
    coefficients.insert(0, 'organism', organism)

    emm, contrasts = treatment_contrasts(result, fdr_alpha=fdr_alpha, family=organism)
    return {
        'selection': selection_df,
        'coefficients': coefficients,
        'diagnostics': diagnostics,
        'emmeans': emm,
        'contrasts': contrasts,
    }


def analyze_densities(density_path, output_dir, lrt_alpha=common.LRT_ALPHA,
                      fdr_alpha=common.FDR_ALPHA):
    """Fit and compare density LMMs for every organism; save tables and figures."""
    long_df = load_densities(density_path)
    trajectories = density_trajectories(long_df)

    banner("Step 8: Density LMMs (random intercept: population, ML)...")
    parts = [
        analyze_organism_density(sub.reset_index(drop=True), organism,
                                 lrt_alpha=lrt_alpha, fdr_alpha=fdr_alpha)
        for organism, sub in long_df.groupby('organism', sort=True)
    ]

    tables = {'long': long_df, 'trajectories': trajectories}
    for key in ['selection', 'coefficients', 'diagnostics', 'emmeans', 'contrasts']:
        frames = [p[key] for p in parts if not p[key].empty]
        tables[key] = pd.concat(frames, ignore_index=True) if frames else pd.DataFrame()

    if not tables['contrasts'].empty:
        # contrasts were BH-adjusted per organism; re-adjust across organisms
        tables['contrasts'] = posthoc.adjust_families(tables['contrasts'], 'p_tukey',
                                                      alpha=fdr_alpha)

    for name, table in tables.items():
        path = Path(output_dir) / f"density_{name}.csv"
        table.to_csv(path, index=False)
        print(f"  Saved: {path}")

    for organism, sub in trajectories.groupby('organism', sort=True):
        plotting.plot_trajectories(
            sub, 'transfer', 'mean_log10_density', 'se', 'treatment',
            Path(output_dir) / f"density_{organism}_trajectories.png",
            ylabel='log10 density (per ml)', title=f"{organism} density",
        )
    return tables


# ============================================================================
# MAIN ANALYSIS PIPELINE
# ============================================================================

def analyze_resistance(resistance_path, density_path=None, output_dir=common.OUTPUT_DIR,
                       fdr_alpha=common.FDR_ALPHA, lrt_alpha=common.LRT_ALPHA):
    """
    Run the resistance analysis and, when a density table is given, the
    density analysis.

    Returns:
        Dict of result tables (density tables under 'density_<name>')
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    plotting.set_style()

    long_df = load_resistance(resistance_path)
    per_population, trajectories = resistance_trajectories(long_df)
    selection = select_resistance_model(long_df, lrt_alpha=lrt_alpha)
    diagnostics, hl, glmm_table = resistance_diagnostics(long_df, selection)

    banner("Step 6: Treatment contrasts within transfer...")
    emm, contrasts = treatment_contrasts(selection.result, fdr_alpha=fdr_alpha)

    tables = {
        'resistance_long': long_df,
        'resistance_by_population': per_population,
        'resistance_trajectories': trajectories,
        'resistance_model_selection': models.selection_table(selection),
        'resistance_coefficients': models.coefficient_table(selection.result,
                                                            fdr_alpha=fdr_alpha),
        'resistance_goodness_of_fit': diagnostics,
        'resistance_hosmer_lemeshow_groups': hl.table,
        'resistance_emmeans': emm,
        'resistance_tukey_contrasts': contrasts,
    }
    if glmm_table is not None:
        tables['resistance_glmm'] = glmm_table

    for name, table in tables.items():
        path = output_dir / f"{name}.csv"
        table.to_csv(path, index=False)
        print(f"  Saved: {path}")

    plotting.plot_trajectories(trajectories, 'transfer', 'mean_proportion', 'se',
                               'treatment', output_dir / "resistance_trajectories.png",
                               ylabel='Proportion resistant',
                               title='Resistance to ancestral phage')
    plotting.plot_hl_calibration(hl.table, output_dir / "resistance_calibration.png")
    if not emm.empty and 'transfer' in emm.columns:
        plotting.plot_emms(emm, 'transfer', 'treatment',
                           output_dir / "resistance_emmeans.png",
                           ylabel='Probability resistant')

    if density_path is None or not Path(density_path).exists():
        print(f"\n  Density table not found ({density_path}), density analysis skipped")
        return tables

    density_tables = analyze_densities(density_path, output_dir,
                                       lrt_alpha=lrt_alpha, fdr_alpha=fdr_alpha)
    tables.update({f"density_{name}": table for name, table in density_tables.items()})
    return tables


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Resistance and density analysis (GLM/GLMM/LMM, LRT selection, Tukey EMMs)"
    )
    p.add_argument(
        "--data-dir",
        type=Path,
        default=common.DATA_DIR,
        help="Directory holding the input CSVs (default: data/)",
    )
    p.add_argument(
        "--resistance",
        type=Path,
        default=None,
        help=f"Resistance CSV (default: <data-dir>/{RESISTANCE_FILE})",
    )
    p.add_argument(
        "--densities",
        type=Path,
        default=None,
        help=f"Density CSV (default: <data-dir>/{DENSITY_FILE})",
    )
    p.add_argument(
        "--out-dir",
        type=Path,
        default=common.OUTPUT_DIR,
        help="Output directory for tables and figures (default: outputs/)",
    )
    p.add_argument("--fdr-alpha", type=float, default=common.FDR_ALPHA)
    p.add_argument("--lrt-alpha", type=float, default=common.LRT_ALPHA)
    return p.parse_args(argv)


def main(argv=None) -> None:
    args = parse_args(argv)
    resistance_path = args.resistance or args.data_dir / RESISTANCE_FILE
    density_path = args.densities or args.data_dir / DENSITY_FILE
    if not resistance_path.exists():
        sys.exit(f"error: input file not found: {resistance_path}")

    warnings.filterwarnings('ignore')

    banner("RESISTANCE AND POPULATION DYNAMICS ANALYSIS")
    print(f"  Resistance: {resistance_path}")
    print(f"  Densities: {density_path}")
    print(f"  FDR alpha: {args.fdr_alpha}, LRT alpha: {args.lrt_alpha}")
    print(f"  Output directory: {args.out_dir}")

    analyze_resistance(resistance_path, density_path, args.out_dir,
                       fdr_alpha=args.fdr_alpha, lrt_alpha=args.lrt_alpha)

    banner("ANALYSIS COMPLETE!")
    print(f"\nAll results saved to: {args.out_dir}")


if __name__ == "__main__":
    main()
