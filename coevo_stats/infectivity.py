#!/usr/bin/env python3
"""
Time-shift infectivity analysis of co-evolving phage and bacteria.

Bacterial clones isolated from each population and transfer were challenged
with phages isolated from the same population at past, contemporary and
future transfers, with and without oxidative stress (H2O2). The analysis:
1. Reshapes the wide infection matrix to one row per clone x phage
2. Summarises host range of clones and phages
3. Fits a binomial GLM (treatment x time shift), selected by sequential LRTs
4. Checks fit (Hosmer-Lemeshow, AUC) and dispersion of a population GLMM
5. Compares estimated marginal means (Tukey) with BH correction across families
6. Tests the treatment effect at each bacterial transfer (Fisher, BH)
"""
import argparse
import sys
import warnings
from pathlib import Path

import numpy as np
import pandas as pd
from scipy import stats

from coevo_stats import common, models, plotting, posthoc, reshape
from coevo_stats.common import banner

# ============================================================================
# Configuration
# ============================================================================

INFECTION_FILE = 'infectivity_matrix.csv'
OUTPUT_PREFIX = 'infectivity'
MODEL_FACTORS = ['treatment', 'time_shift_class']
GLMM_GROUP = 'population'
DISPERSION_CELLS = ['population', 'bacteria_transfer', 'time_shift_class']

# Post-hoc families: (compared factor, conditioning factor)
EMM_FAMILIES = [
    ('time_shift_class', 'treatment'),
    ('treatment', 'time_shift_class'),
]


# ============================================================================
# STEP 1: LOAD AND RESHAPE
# ============================================================================

def load_infection_matrix(path) -> pd.DataFrame:
    """Load the wide infection matrix and return the long binary table."""
    banner("Step 1: Loading infection matrix...")
    wide = pd.read_csv(path)
    print(f"  Wide matrix: {wide.shape[0]} clones x "
          f"{wide.shape[1] - len(reshape.INFECTION_ID_COLS)} phages")

    long_df = reshape.infection_long(wide)
    print(f"  Tested clone x phage pairs: {len(long_df):,}")
    print(f"  Treatments: {sorted(long_df['treatment'].unique())}")
    print(f"  Time-shift classes: {list(long_df['time_shift_class'].cat.categories)}")
    return long_df


# ============================================================================
# STEP 2-3: DESCRIPTIVE SUMMARIES
# ============================================================================

def summarise_host_range(long_df: pd.DataFrame):
    banner("Step 2: Host range summaries...")
    clone_range, phage_range = reshape.host_range(long_df)
    print(f"  Clones: {len(clone_range)}, mean fraction infected "
          f"{clone_range['fraction_infected'].mean():.3f}")
    print(f"  Phages: {len(phage_range)}, mean host range "
          f"{phage_range['fraction_infected'].mean():.3f}")
    return clone_range, phage_range


def summarise_time_shift(long_df: pd.DataFrame) -> pd.DataFrame:
    banner("Step 3: Infection proportion by treatment and time shift...")
    summary = reshape.aggregate_binary(long_df, ['treatment', 'time_shift_class'],
                                       'infected')
    print(summary.to_string(index=False))
    return summary


# ============================================================================
# STEP 4: MODEL SELECTION
# ============================================================================

def select_infection_model(long_df: pd.DataFrame, lrt_alpha=common.LRT_ALPHA):
    """
    Backward selection of the binomial GLM by sequential LRTs.

    Returns:
        ModelSelection (final GLM in .result)
    """
    banner("Step 4: Binomial GLM with sequential likelihood-ratio tests...")
    formula = models.factorial_formula('infected', MODEL_FACTORS, long_df)
    print(f"  Full model: {formula}")

    selection = models.backward_select(formula, long_df, fit=models.fit_glm,
                                       alpha=lrt_alpha)
    for step in selection.steps:
        print(f"  [{step.step}] {step.term:45s} LRT={step.statistic:8.3f} "
              f"df={step.df} p={step.p_value:.4f} -> {step.action}")
    print(f"  Final model: {selection.final_formula} "
          f"(AIC={selection.result.aic:.1f})")
    return selection


# ============================================================================
# STEP 5-6: GOODNESS OF FIT AND DISPERSION
# ============================================================================

def assess_fit(long_df: pd.DataFrame, result, groups=common.HL_GROUPS):
    """Hosmer-Lemeshow test, AUC and GLM dispersion for the selected model."""
    banner("Step 5: Goodness of fit...")
    p_hat = np.asarray(result.predict())
    y = long_df['infected'].to_numpy()

    hl = models.hosmer_lemeshow(y, p_hat, groups=groups)
    auc = models.discrimination_auc(y, p_hat)
    dispersion = models.grouped_binomial_dispersion(
        long_df, DISPERSION_CELLS, 'infected', p_hat, models.n_parameters(result)
    )
    print(f"  Hosmer-Lemeshow: X2={hl.statistic:.3f}, df={hl.df}, p={hl.p_value:.4f}")
    print(f"  AUC: {auc:.3f}")
    print(f"  GLM dispersion (cells): {dispersion.ratio:.3f}")
    return hl, auc, dispersion


def fit_population_glmm(long_df: pd.DataFrame, formula: str):
    """
    Refit the selected fixed effects with a random intercept per population
    and check dispersion at the population x transfer x time-shift level.
    """
    banner("Step 6: Binomial GLMM (random intercept: population)...")
    if long_df[GLMM_GROUP].nunique() < 2:
        print("  Fewer than two populations, GLMM skipped")
        return None, None

    glmm = models.fit_binomial_glmm(formula, long_df, GLMM_GROUP)
    fitted = models.glmm_fitted_probabilities(glmm)
    dispersion = models.grouped_binomial_dispersion(
        long_df, DISPERSION_CELLS, 'infected', fitted, models.n_parameters(glmm)
    )
    table = models.glmm_summary_table(glmm)
    random_sd = table.loc[table['kind'] == 'random_sd', 'posterior_mean']
    print(f"  Population SD (logit scale): {random_sd.iloc[0]:.3f}")
    print(f"  GLMM dispersion ratio: {dispersion.ratio:.3f} "
          f"(p={dispersion.p_value:.4f})")
    return table, dispersion


def fit_summary_table(selection, hl, auc, glm_dispersion, glmm_dispersion):
    rows = [
        ('final_formula', selection.final_formula),
        ('n_observations', int(selection.result.nobs)),
        ('aic', selection.result.aic),
        ('converged', bool(selection.result.converged)),
        ('hosmer_lemeshow_statistic', hl.statistic),
        ('hosmer_lemeshow_df', hl.df),
        ('hosmer_lemeshow_p', hl.p_value),
        ('auc', auc),
        ('glm_dispersion_ratio', glm_dispersion.ratio),
        ('glm_dispersion_p', glm_dispersion.p_value),
    ]
    if glmm_dispersion is not None:
        rows += [
            ('glmm_dispersion_ratio', glmm_dispersion.ratio),
            ('glmm_dispersion_p', glmm_dispersion.p_value),
        ]
    return pd.DataFrame(rows, columns=['metric', 'value'])


# ============================================================================
# STEP 7: ESTIMATED MARGINAL MEANS
# ============================================================================

def compare_marginal_means(result, fdr_alpha=common.FDR_ALPHA):
    """
    EMMs and Tukey contrasts for each family whose factor survived selection.

    Tukey adjusts within each conditioning level; BH then runs across all
    contrasts of a family.
    """
    banner("Step 7: Estimated marginal means and Tukey contrasts...")
    variables, _ = posthoc.model_variables(result)

    emm_tables = []
    contrast_tables = []
    for specs, by in EMM_FAMILIES:
        if specs not in variables:
            print(f"  {specs}: not in final model, skipped")
            continue
        by_used = by if by in variables else None
        family = f"{specs} | {by_used}" if by_used else specs

        emm = posthoc.estimated_marginal_means(result, specs, by=by_used)
        emm.insert(0, 'family', family)
        emm_tables.append(emm)

        contrasts = posthoc.pairwise_tukey(result, specs, by=by_used)
        contrasts.insert(0, 'family', family)
        contrast_tables.append(contrasts)
        print(f"  {family}: {len(emm)} means, {len(contrasts)} contrasts")

    if not contrast_tables:
        return pd.DataFrame(), pd.DataFrame()

    emm_df = pd.concat(emm_tables, ignore_index=True)
    contrast_df = pd.concat(contrast_tables, ignore_index=True)
    contrast_df = posthoc.adjust_families(contrast_df, 'p_tukey', 'family',
                                          alpha=fdr_alpha)
    n_sig = int(contrast_df['significant'].sum())
    print(f"  Significant contrasts (BH q < {fdr_alpha}): {n_sig}/{len(contrast_df)}")
    return emm_df, contrast_df


# ============================================================================
# STEP 8: TREATMENT TESTS PER TRANSFER
# ============================================================================

def treatment_tests_by_transfer(long_df: pd.DataFrame, fdr_alpha=common.FDR_ALPHA):
    """
    Treatment x infected contingency test at each bacterial transfer.

    Fisher's exact test for two treatments, chi-square otherwise.
    """
    banner("Step 8: Treatment effect at each bacterial transfer...")
    rows = []
    for transfer, sub in long_df.groupby('bacteria_transfer', sort=True):
        table = pd.crosstab(sub['treatment'], sub['infected']).reindex(
            columns=[0, 1], fill_value=0
        )
        if len(table) < 2:
            continue
        if table.shape == (2, 2):
            odds_ratio, p_value = stats.fisher_exact(table.to_numpy())
            test = 'fisher_exact'
        elif (table.sum(axis=0) == 0).any():
            # no variation in outcome at this transfer
            odds_ratio, p_value, test = np.nan, 1.0, 'chi2'
        else:
            _, p_value, _, _ = stats.chi2_contingency(table.to_numpy())
            odds_ratio = np.nan
            test = 'chi2'

        proportions = table[1] / table.sum(axis=1)
        row = {'bacteria_transfer': transfer, 'test': test, 'n': int(table.to_numpy().sum()),
               'odds_ratio': odds_ratio, 'p_value': p_value}
        for treatment, proportion in proportions.items():
            row[f'proportion_{treatment}'] = proportion
        rows.append(row)

    tests = posthoc.adjust_families(pd.DataFrame(rows), 'p_value', alpha=fdr_alpha)
    if not tests.empty:
        print(tests[['bacteria_transfer', 'test', 'p_value', 'q_value']].to_string(index=False))
    return tests


# ============================================================================
# MAIN ANALYSIS PIPELINE
# ============================================================================

def analyze_infectivity(matrix_path, output_dir=common.OUTPUT_DIR,
                        fdr_alpha=common.FDR_ALPHA, lrt_alpha=common.LRT_ALPHA):
    """
    Run the complete time-shift infectivity analysis.

    Args:
        matrix_path: Path to the wide infection matrix CSV
        output_dir: Directory for tables and figures
        fdr_alpha: BH significance threshold
        lrt_alpha: LRT threshold for retaining a model term

    Returns:
        Dict of result tables keyed by output name
    """
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)
    plotting.set_style()

    long_df = load_infection_matrix(matrix_path)
    clone_range, phage_range = summarise_host_range(long_df)
    summary = summarise_time_shift(long_df)

    selection = select_infection_model(long_df, lrt_alpha=lrt_alpha)
    result = selection.result
    hl, auc, glm_dispersion = assess_fit(long_df, result)
    glmm_table, glmm_dispersion = fit_population_glmm(long_df, selection.final_formula)

    emm_df, contrast_df = compare_marginal_means(result, fdr_alpha=fdr_alpha)
    transfer_tests = treatment_tests_by_transfer(long_df, fdr_alpha=fdr_alpha)

    tables = {
        'long': long_df,
        'host_range_clones': clone_range,
        'host_range_phages': phage_range,
        'summary': summary,
        'model_selection': models.selection_table(selection),
        'coefficients': models.coefficient_table(result, fdr_alpha=fdr_alpha),
        'goodness_of_fit': fit_summary_table(selection, hl, auc, glm_dispersion,
                                             glmm_dispersion),
        'hosmer_lemeshow_groups': hl.table,
        'emmeans': emm_df,
        'tukey_contrasts': contrast_df,
        'treatment_tests_by_transfer': transfer_tests,
    }
    if glmm_table is not None:
        tables['glmm'] = glmm_table

    banner("Step 9: Saving tables and figures...")
    for name, table in tables.items():
        path = output_dir / f"{OUTPUT_PREFIX}_{name}.csv"
        table.to_csv(path, index=False)
        print(f"  Saved: {path}")

    plotting.plot_infection_heatmap(long_df, output_dir / f"{OUTPUT_PREFIX}_matrix_heatmap.png")
    plotting.plot_time_shift(summary, output_dir / f"{OUTPUT_PREFIX}_time_shift.png")
    plotting.plot_hl_calibration(hl.table, output_dir / f"{OUTPUT_PREFIX}_calibration.png")
    if not emm_df.empty:
        time_emms = emm_df[emm_df['family'].str.startswith('time_shift_class')]
        time_emms = time_emms.dropna(axis=1, how='all')
        if not time_emms.empty and 'treatment' in time_emms.columns:
            plotting.plot_emms(time_emms, 'time_shift_class',
                               'treatment', output_dir / f"{OUTPUT_PREFIX}_emmeans.png",
                               ylabel='Infection probability')

    return tables


def parse_args(argv=None) -> argparse.Namespace:
    p = argparse.ArgumentParser(
        description="Time-shift infectivity analysis (GLM, Hosmer-Lemeshow, Tukey EMMs)"
    )
    p.add_argument(
        "--data-dir",
        type=Path,
        default=common.DATA_DIR,
        help="Directory holding the input CSVs (default: data/)",
    )
    p.add_argument(
        "--matrix",
        type=Path,
        default=None,
        help=f"Infection matrix CSV (default: <data-dir>/{INFECTION_FILE})",
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
    matrix_path = args.matrix or args.data_dir / INFECTION_FILE
    if not matrix_path.exists():
        sys.exit(f"error: input file not found: {matrix_path}")

    warnings.filterwarnings('ignore')

    banner("TIME-SHIFT INFECTIVITY ANALYSIS")
    print(f"  Input: {matrix_path}")
    print(f"  FDR alpha: {args.fdr_alpha}, LRT alpha: {args.lrt_alpha}")
    print(f"  Output directory: {args.out_dir}")

    analyze_infectivity(matrix_path, args.out_dir, fdr_alpha=args.fdr_alpha,
                        lrt_alpha=args.lrt_alpha)

    banner("ANALYSIS COMPLETE!")
    print(f"\nAll results saved to: {args.out_dir}")


if __name__ == "__main__":
    main()
