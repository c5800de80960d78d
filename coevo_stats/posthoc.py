"""
Post-hoc comparisons: estimated marginal means (EMMs), Tukey-adjusted
pairwise contrasts and Benjamini-Hochberg FDR correction.

EMMs follow the usual reference-grid construction: every combination of the
factor levels in the fitted data, numeric covariates held at their mean,
predictions averaged with equal weights over the factors not being compared.
Contrasts are formed on the link scale and use the asymptotic (df = inf)
studentized range distribution for the Tukey adjustment.
"""
import itertools
import re

import numpy as np
import pandas as pd
from patsy import build_design_matrices
from scipy import stats
from statsmodels.genmod.families import links
from statsmodels.stats.multitest import multipletests

from coevo_stats.common import CI_LEVEL, FDR_ALPHA

IDENTIFIER_RE = re.compile(r'[A-Za-z_][A-Za-z0-9_]*')


# ============================================================================
# Benjamini-Hochberg
# ============================================================================

def bh_adjust(p_values, alpha=FDR_ALPHA):
    """
    Benjamini-Hochberg FDR correction that tolerates NaN p-values.

    NaN entries stay NaN and do not count towards the family size.

    Returns:
        Tuple of (q_values, reject) arrays aligned with the input
    """
    p = np.asarray(p_values, dtype=float)
    q_values = np.full(p.shape, np.nan)
    reject = np.zeros(p.shape, dtype=bool)

    valid = ~np.isnan(p)
    if valid.any():
        rej, q_valid, _, _ = multipletests(p[valid], alpha=alpha, method='fdr_bh')
        q_values[valid] = q_valid
        reject[valid] = rej
    return q_values, reject


def adjust_families(df, p_col, family_col=None, alpha=FDR_ALPHA):
    """
    Apply BH correction separately within each family of tests.

    Adds q_value and significant columns to a copy of df.
    """
    out = df.copy()
    out['q_value'] = np.nan
    out['significant'] = False
    if out.empty:
        return out

    if family_col is None:
        groups = [(None, out.index)]
    else:
        groups = out.groupby(family_col, sort=False).groups.items()

    for _, index in groups:
        q_values, reject = bh_adjust(out.loc[index, p_col], alpha=alpha)
        out.loc[index, 'q_value'] = q_values
        out.loc[index, 'significant'] = reject
    return out


# ============================================================================
# Reference grid
# ============================================================================

def _as_list(value):
    if value is None:
        return []
    if isinstance(value, str):
        return [value]
    return list(value)


def _fixed_effects(result):
    """Fixed-effect estimates, their covariance and the model's link."""
    if hasattr(result, 'fe_params'):
        # MixedLM: Gaussian with identity link, random effects excluded
        beta = result.fe_params
        vcov = result.cov_params().loc[beta.index, beta.index]
        link = links.Identity()
    else:
        beta = result.params
        vcov = result.cov_params()
        link = result.model.family.link
    return beta, vcov, link


def model_variables(result):
    """Data columns entering the right-hand side, and which are categorical."""
    frame = result.model.data.frame
    design_info = result.model.data.design_info

    variables = []
    categorical = set()
    for factor, info in design_info.factor_infos.items():
        for token in IDENTIFIER_RE.findall(factor.name()):
            if token not in frame.columns:
                continue
            if token not in variables:
                variables.append(token)
            if info.type == 'categorical':
                categorical.add(token)
    return variables, categorical


def _levels(series):
    if isinstance(series.dtype, pd.CategoricalDtype):
        return list(series.cat.remove_unused_categories().cat.categories)
    return sorted(series.dropna().unique())


def reference_grid(result, specs, by=None):
    """
    Build the reference grid for a fitted formula model.

    Args:
        result: Fitted statsmodels GLM or MixedLM results
        specs: Factor(s) whose marginal means are wanted
        by: Factor(s) to condition on

    Returns:
        DataFrame with one row per combination of factor levels
    """
    keys = _as_list(specs) + _as_list(by)
    frame = result.model.data.frame
    variables, categorical = model_variables(result)

    unknown = [k for k in keys if k not in variables]
    if unknown:
        raise ValueError(f"Not in model: {unknown} (model variables: {variables})")

    factors = {}
    covariates = {}
    for name in variables:
        if name in keys or name in categorical:
            factors[name] = _levels(frame[name])
        else:
            covariates[name] = frame[name].mean()

    grid = pd.DataFrame(list(itertools.product(*factors.values())),
                        columns=list(factors))
    for name, value in covariates.items():
        grid[name] = value
    return grid


def _estimable(L, exog, tol=1e-8):
    """
    Rows of L that lie in the row space of the fitted design.

    A factor combination with no observations leaves its interaction column
    all zero, and any marginal mean involving it has no unique estimate.
    """
    exog = np.asarray(exog, dtype=float)
    projection = np.linalg.pinv(exog) @ exog
    residual = np.abs(L - L @ projection).max(axis=1)
    return residual <= tol * np.maximum(1.0, np.abs(L).max(axis=1))


def _emm_matrix(result, specs, by=None):
    """Linear-function matrix L (one row per EMM) plus model quantities."""
    keys = _as_list(specs) + _as_list(by)
    beta, vcov, link = _fixed_effects(result)
    grid = reference_grid(result, specs, by)

    design_info = result.model.data.design_info
    X = build_design_matrices([design_info], grid, return_type='dataframe')[0]
    X = X[beta.index]

    L = X.groupby([grid[k] for k in keys], sort=False).mean()
    levels = L.index.to_frame(index=False)
    levels.columns = keys
    L = L.to_numpy()
    levels['estimable'] = _estimable(L, result.model.exog)
    return levels, L, beta.to_numpy(), vcov.to_numpy(), link


def estimated_marginal_means(result, specs, by=None, level=CI_LEVEL):
    """
    Estimated marginal means on the link and response scales.

    Confidence limits are Wald intervals on the link scale, back-transformed
    through the inverse link. Means that involve a factor combination with
    no observations are not estimable and are reported as NaN.
    """
    levels, L, beta, vcov, link = _emm_matrix(result, specs, by)

    estimable = levels['estimable'].to_numpy()
    estimate = np.where(estimable, L @ beta, np.nan)
    variance = np.einsum('ij,jk,ik->i', L, vcov, L)
    std_error = np.where(estimable, np.sqrt(np.clip(variance, 0, None)), np.nan)
    z_crit = stats.norm.ppf(1 - (1 - level) / 2)

    table = levels.copy()
    table['estimate'] = estimate
    table['std_error'] = std_error
    table['ci_lower'] = estimate - z_crit * std_error
    table['ci_upper'] = estimate + z_crit * std_error
    table['response'] = link.inverse(table['estimate'].to_numpy())
    table['response_lower'] = link.inverse(table['ci_lower'].to_numpy())
    table['response_upper'] = link.inverse(table['ci_upper'].to_numpy())
    return table


def pairwise_tukey(result, specs, by=None):
    """
    All pairwise contrasts of EMMs with Tukey adjustment.

    Contrasts are computed on the link scale within each level of `by`.
    Levels whose marginal mean is not estimable are left out of the family.
    For logit models the contrast is also reported as an odds ratio, for
    log links as a ratio.

    Returns:
        DataFrame with one row per contrast
    """
    specs = _as_list(specs)
    by = _as_list(by)
    levels, L, beta, vcov, link = _emm_matrix(result, specs, by)

    labels = levels[specs].astype(str).agg(':'.join, axis=1).to_numpy()
    if by:
        groups = levels.groupby(by, sort=False).indices.items()
    else:
        groups = [((), np.arange(len(levels)))]

    rows = []
    estimable = levels['estimable'].to_numpy()
    for by_value, index in groups:
        index = [i for i in index if estimable[i]]
        k = len(index)
        if k < 2:
            continue
        by_value = by_value if isinstance(by_value, tuple) else (by_value,)
        for i, j in itertools.combinations(index, 2):
            c = L[i] - L[j]
            estimate = float(c @ beta)
            std_error = float(np.sqrt(c @ vcov @ c))
            z = estimate / std_error if std_error > 0 else np.nan
            p_value = 2 * stats.norm.sf(abs(z))
            if k > 2:
                p_tukey = stats.studentized_range.sf(abs(z) * np.sqrt(2), k, np.inf)
                p_tukey = float(np.clip(p_tukey, p_value, 1.0))
            else:
                p_tukey = p_value

            row = dict(zip(by, by_value))
            row.update({
                'contrast': f"{labels[i]} - {labels[j]}",
                'n_levels': k,
                'estimate': estimate,
                'std_error': std_error,
                'z_ratio': z,
                'p_value': p_value,
                'p_tukey': p_tukey,
            })
            if isinstance(link, links.Logit):
                row['odds_ratio'] = np.exp(estimate)
            elif isinstance(link, links.Log):
                row['ratio'] = np.exp(estimate)
            rows.append(row)

    if not rows:
        raise ValueError(f"Fewer than two levels of {specs} to compare")
    return pd.DataFrame(rows)
