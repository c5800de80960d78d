"""
Model fitting, sequential likelihood-ratio model selection and fit diagnostics.

GLMs and LMMs are fit through the statsmodels formula API. LMMs are fit by
maximum likelihood (not REML) so that models with different fixed effects can
be compared by likelihood-ratio tests. Binomial GLMMs use statsmodels'
variational-Bayes mixed GLM, which has no likelihood for LRTs; they are used
for random-effect estimates and dispersion checks only.
"""
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Tuple

import numpy as np
import pandas as pd
import statsmodels.api as sm
import statsmodels.formula.api as smf
from patsy import ModelDesc
from scipy import stats
from sklearn.metrics import roc_auc_score
from statsmodels.genmod.bayes_mixed_glm import BinomialBayesMixedGLM

from coevo_stats.common import CI_LEVEL, FDR_ALPHA, HL_GROUPS, LRT_ALPHA
from coevo_stats.posthoc import bh_adjust


# ============================================================================
# Fitting
# ============================================================================

def fit_glm(formula, data, family=None):
    """Fit a GLM (binomial/logit by default)."""
    if family is None:
        family = sm.families.Binomial()
    return smf.glm(formula, data=data, family=family).fit()


def fit_lmm(formula, data, groups):
    """Fit a random-intercept LMM by maximum likelihood."""
    return smf.mixedlm(formula, data, groups=data[groups]).fit(reml=False)


def fit_binomial_glmm(formula, data, group):
    """
    Binomial GLMM with a random intercept per level of `group`.

    Fit by variational Bayes; the returned results carry posterior means of
    the fixed effects (fe_mean), random effects (vc_mean) and log standard
    deviations of the variance components (vcp_mean).
    """
    vc_formulas = {group: f"0 + C({group})"}
    model = BinomialBayesMixedGLM.from_formula(formula, vc_formulas, data)
    return model.fit_vb()


def glmm_fitted_probabilities(result) -> np.ndarray:
    """Fitted probabilities including the posterior-mean random effects."""
    model = result.model
    linear = model.exog @ result.fe_mean
    linear = linear + np.asarray(model.exog_vc.dot(result.vc_mean)).ravel()
    return model.family.link.inverse(linear)


def glmm_summary_table(result) -> pd.DataFrame:
    """Posterior means and SDs of fixed effects and random-effect SDs."""
    model = result.model
    fixed = pd.DataFrame({
        'parameter': model.fep_names,
        'kind': 'fixed',
        'posterior_mean': result.fe_mean,
        'posterior_sd': result.fe_sd,
    })
    variance = pd.DataFrame({
        'parameter': model.vcp_names,
        'kind': 'random_sd',
        'posterior_mean': np.exp(result.vcp_mean),
        'posterior_sd': np.nan,
    })
    return pd.concat([fixed, variance], ignore_index=True)


def n_parameters(result) -> int:
    """
    Number of estimable parameters, used as LRT degrees of freedom.

    Fixed effects count by the rank of the design matrix, so all-zero columns
    from empty factor combinations are not counted.
    """
    rank = int(np.linalg.matrix_rank(np.asarray(result.model.exog, dtype=float)))
    if hasattr(result, 'fe_mean'):
        return rank + len(result.vcp_mean)
    if hasattr(result, 'fe_params'):
        return rank + result.model.k_re2 + result.model.k_vc
    return rank


# ============================================================================
# Likelihood-ratio tests and backward selection
# ============================================================================

@dataclass
class LRTResult:
    reduced: str
    full: str
    statistic: float
    df: int
    p_value: float


def likelihood_ratio_test(reduced, full) -> LRTResult:
    """
    Likelihood-ratio test of a reduced model nested in a full one.

    Args:
        reduced: Fitted results of the smaller model
        full: Fitted results of the larger model

    Returns:
        LRTResult with chi-square statistic, df and p-value
    """
    n_reduced = len(reduced.model.endog)
    n_full = len(full.model.endog)
    if n_reduced != n_full:
        raise ValueError(
            f"Models fit to different data ({n_reduced} vs {n_full} observations)"
        )

    df = n_parameters(full) - n_parameters(reduced)
    if df <= 0:
        raise ValueError("Full model must have more parameters than the reduced model")

    statistic = max(2 * (full.llf - reduced.llf), 0.0)
    return LRTResult(
        reduced=getattr(reduced.model, 'formula', ''),
        full=getattr(full.model, 'formula', ''),
        statistic=statistic,
        df=df,
        p_value=float(stats.chi2.sf(statistic, df)),
    )


def formula_terms(formula: str) -> Tuple[str, List[str]]:
    """Split a formula into its response and fixed-effect term labels."""
    desc = ModelDesc.from_formula(formula)
    response = ' + '.join(term.name() for term in desc.lhs_termlist)
    terms = [term.name() for term in desc.rhs_termlist if term.factors]
    return response, terms


def build_formula(response: str, terms: List[str]) -> str:
    return f"{response} ~ {' + '.join(terms) if terms else '1'}"


def factorial_formula(response: str, factors: List[str], data: pd.DataFrame) -> str:
    """
    Full-factorial formula over the categorical factors that vary in `data`.

    A factor with a single observed level cannot be estimated and is left
    out, e.g. ``factorial_formula('y', ['a', 'b'], df) -> 'y ~ C(a) * C(b)'``.
    """
    usable = [f for f in factors if data[f].nunique() > 1]
    if not usable:
        return f"{response} ~ 1"
    return f"{response} ~ {' * '.join(f'C({f})' for f in usable)}"


def droppable_terms(terms: List[str]) -> List[str]:
    """Terms not contained in any higher-order term (marginality)."""
    factor_sets = {term: set(term.split(':')) for term in terms}
    return [
        term for term in terms
        if not any(factor_sets[term] < other for t, other in factor_sets.items()
                   if t != term)
    ]


@dataclass
class SelectionStep:
    step: int
    term: str
    statistic: float
    df: int
    p_value: float
    action: str


@dataclass
class ModelSelection:
    initial_formula: str
    final_formula: str
    result: object
    steps: List[SelectionStep] = field(default_factory=list)

    @property
    def dropped(self) -> List[str]:
        return [s.term for s in self.steps if s.action == 'dropped']


def backward_select(formula: str, data: pd.DataFrame,
                    fit: Optional[Callable] = None,
                    alpha: float = LRT_ALPHA) -> ModelSelection:
    """
    Backward model selection by sequential likelihood-ratio tests.

    At each step every term that may be dropped without breaking marginality
    is tested against the current model. The term with the largest p-value
    is dropped if that p-value is >= alpha; otherwise selection stops.
    A term with no estimable parameters of its own is logged with df 0 and
    p = 1, so it is dropped first.

    Args:
        formula: Full model formula
        data: Data the models are fit to (the same rows for every model)
        fit: Callable (formula, data) -> fitted results; binomial GLM if None
        alpha: LRT significance level for retaining a term

    Returns:
        ModelSelection with the final fitted model and the test log
    """
    if fit is None:
        fit = fit_glm

    response, terms = formula_terms(formula)
    current_formula = build_formula(response, terms)
    current = fit(current_formula, data)
    steps = []
    step = 0

    while terms:
        step += 1
        candidates = []
        for term in droppable_terms(terms):
            reduced_terms = [t for t in terms if t != term]
            reduced_formula = build_formula(response, reduced_terms)
            reduced = fit(reduced_formula, data)
            if n_parameters(reduced) == n_parameters(current):
                # every column of the term is aliased by empty cells
                lrt = LRTResult(reduced_formula, current_formula, 0.0, 0, 1.0)
            else:
                lrt = likelihood_ratio_test(reduced, current)
            candidates.append((term, reduced_terms, reduced_formula, reduced, lrt))

        worst = max(candidates, key=lambda c: c[4].p_value)
        drop = worst[4].p_value >= alpha

        for term, _, _, _, lrt in candidates:
            action = 'dropped' if drop and term == worst[0] else 'retained'
            steps.append(SelectionStep(step, term, lrt.statistic, lrt.df,
                                       lrt.p_value, action))
        if not drop:
            break

        _, terms, current_formula, current, _ = worst

    return ModelSelection(initial_formula=formula, final_formula=current_formula,
                          result=current, steps=steps)


def selection_table(selection: ModelSelection) -> pd.DataFrame:
    table = pd.DataFrame([vars(s) for s in selection.steps],
                         columns=['step', 'term', 'statistic', 'df', 'p_value', 'action'])
    table['final_formula'] = selection.final_formula
    return table


# ============================================================================
# Coefficients
# ============================================================================

def _is_logit(result) -> bool:
    family = getattr(result.model, 'family', None)
    return isinstance(getattr(family, 'link', None), sm.families.links.Logit)


def _aligned(values, names) -> pd.Series:
    # MixedLM reports fixed effects first, then variance parameters
    if isinstance(values, pd.Series):
        return values.loc[names]
    return pd.Series(np.asarray(values)[:len(names)], index=names)


def coefficient_table(result, exponentiate=None, level=CI_LEVEL,
                      fdr_alpha=FDR_ALPHA) -> pd.DataFrame:
    """
    Fixed-effect coefficients with Wald CIs and BH-adjusted p-values.

    Odds ratios are added for logit models (or when exponentiate=True).
    The intercept is excluded from the BH family.
    """
    params = result.fe_params if hasattr(result, 'fe_params') else result.params
    names = params.index
    bse = _aligned(result.bse, names)
    ci = np.asarray(result.conf_int(alpha=1 - level))[:len(names)]

    table = pd.DataFrame({
        'term': names,
        'estimate': params.to_numpy(),
        'std_error': bse.to_numpy(),
        'z': (params / bse).to_numpy(),
        'p_value': _aligned(result.pvalues, names).to_numpy(),
        'ci_lower': ci[:, 0],
        'ci_upper': ci[:, 1],
    })

    if exponentiate is None:
        exponentiate = _is_logit(result)
    if exponentiate:
        table['odds_ratio'] = np.exp(table['estimate'])
        table['or_ci_lower'] = np.exp(table['ci_lower'])
        table['or_ci_upper'] = np.exp(table['ci_upper'])

    slopes = table['term'] != 'Intercept'
    q_values, reject = bh_adjust(table.loc[slopes, 'p_value'], alpha=fdr_alpha)
    table['q_value'] = np.nan
    table['significant'] = False
    table.loc[slopes, 'q_value'] = q_values
    table.loc[slopes, 'significant'] = reject
    table['converged'] = bool(getattr(result, 'converged', True))
    return table


# ============================================================================
# Goodness of fit
# ============================================================================

@dataclass
class HosmerLemeshowResult:
    statistic: float
    df: int
    p_value: float
    table: pd.DataFrame


def hosmer_lemeshow(y, p_hat, groups: int = HL_GROUPS) -> HosmerLemeshowResult:
    """
    Hosmer-Lemeshow goodness-of-fit test for a binary-outcome model.

    Observations are grouped by quantiles of the predicted probability (tied
    quantiles merged). With g groups the statistic is compared to a
    chi-square with g - 2 df. Fewer than three groups gives NaN.
    """
    df = pd.DataFrame({'y': np.asarray(y, dtype=float),
                       'p_hat': np.asarray(p_hat, dtype=float)})

    if df['p_hat'].nunique() < 3:
        empty = pd.DataFrame(columns=['group', 'n', 'observed', 'expected', 'mean_p'])
        return HosmerLemeshowResult(np.nan, 0, np.nan, empty)

    df['group'] = pd.qcut(df['p_hat'], q=groups, labels=False, duplicates='drop')
    table = df.groupby('group').agg(
        n=('y', 'size'),
        observed=('y', 'sum'),
        expected=('p_hat', 'sum'),
        mean_p=('p_hat', 'mean'),
    ).reset_index()

    g = len(table)
    if g < 3:
        return HosmerLemeshowResult(np.nan, 0, np.nan, table)

    denominator = table['expected'] * (1 - table['mean_p'])
    contributions = np.where(
        denominator > 0,
        (table['observed'] - table['expected']) ** 2 / denominator.where(denominator > 0, 1.0),
        0.0,
    )
    statistic = float(np.sum(contributions))
    dof = g - 2
    return HosmerLemeshowResult(statistic, dof, float(stats.chi2.sf(statistic, dof)), table)


def discrimination_auc(y, p_hat) -> float:
    """ROC AUC of predicted probabilities; NaN when only one class is present."""
    y = np.asarray(y)
    if len(np.unique(y)) < 2:
        return np.nan
    return float(roc_auc_score(y, p_hat))


# ============================================================================
# Dispersion and residual checks
# ============================================================================

@dataclass
class DispersionResult:
    pearson_chi2: float
    df_resid: int
    ratio: float
    p_value: float


def dispersion_check(y, mu, variance, n_params: int) -> DispersionResult:
    """
    Pearson dispersion ratio with an upper-tail test for overdispersion.

    A ratio well above 1 indicates more variation than the model allows for.
    Observations with zero model variance carry no information and are
    skipped.
    """
    y = np.asarray(y, dtype=float)
    mu = np.asarray(mu, dtype=float)
    variance = np.asarray(variance, dtype=float)

    keep = variance > 0
    pearson_chi2 = float(np.sum((y[keep] - mu[keep]) ** 2 / variance[keep]))
    df_resid = int(keep.sum()) - n_params
    if df_resid <= 0:
        return DispersionResult(pearson_chi2, df_resid, np.nan, np.nan)

    return DispersionResult(
        pearson_chi2=pearson_chi2,
        df_resid=df_resid,
        ratio=pearson_chi2 / df_resid,
        p_value=float(stats.chi2.sf(pearson_chi2, df_resid)),
    )


def grouped_binomial_dispersion(df: pd.DataFrame, group_cols: List[str],
                                outcome: str, fitted, n_params: int) -> DispersionResult:
    """
    Dispersion of binary data aggregated to binomial counts per cluster.

    Row-level 0/1 data cannot show overdispersion, so observed successes are
    compared with the summed fitted probabilities of each group.
    """
    work = df[group_cols].copy()
    work['y'] = df[outcome].to_numpy()
    work['mu'] = np.asarray(fitted, dtype=float)

    agg = work.groupby(group_cols, observed=True).agg(
        n=('y', 'size'), successes=('y', 'sum'), expected=('mu', 'sum')
    )
    p_bar = agg['expected'] / agg['n']
    variance = agg['n'] * p_bar * (1 - p_bar)
    return dispersion_check(agg['successes'], agg['expected'], variance, n_params)


def residual_normality(result):
    """Shapiro-Wilk test on model residuals. Returns (W, p)."""
    resid = np.asarray(result.resid, dtype=float)
    if len(resid) < 3:
        return np.nan, np.nan
    statistic, p_value = stats.shapiro(resid)
    return float(statistic), float(p_value)
