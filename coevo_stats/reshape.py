"""
Reshaping of the wide laboratory tables into long / binary form.

The spreadsheets kept at the bench are wide: one row per bacterial clone (or
per population and transfer) and one column per phage isolate, tested clone
or transfer. Every model in this package needs them long, with one row per
observation and a 0/1 outcome.
"""
import re
from typing import List, Optional, Tuple

import numpy as np
import pandas as pd

from coevo_stats.common import TIME_SHIFT_ORDER

# ============================================================================
# Table layouts
# ============================================================================

INFECTION_ID_COLS = ['clone_id', 'population', 'treatment', 'bacteria_transfer']
RESISTANCE_ID_COLS = ['population', 'treatment', 'transfer']
DENSITY_ID_COLS = ['population', 'treatment', 'organism']

POSITIVE_SCORES = {'1', '1.0', '+', 'y', 'yes', 'true', 'lysis', 'clear',
                   'turbid', 'r', 'resistant'}
NEGATIVE_SCORES = {'0', '0.0', '-', 'n', 'no', 'false', 'none', 's',
                   'susceptible'}
MISSING_SCORES = {'', 'na', 'nan', 'nd'}

PHAGE_COLUMN_RE = re.compile(
    r'^(?:(?P<population>[A-Za-z0-9]+)[_\-\s])?[Tt](?P<transfer>\d+)$'
)
TRANSFER_COLUMN_RE = re.compile(r'^[Tt](?P<transfer>\d+)$')


def parse_phage_column(name: str) -> Tuple[Optional[str], int]:
    """
    Parse phage population and transfer from an infection-matrix header.

    Accepts ``T4``, ``t04``, ``P3_T8``, ``P3-T8`` and ``phage_T12``. The
    population part is optional; a generic ``phage`` prefix is not treated
    as a population.

    Returns:
        Tuple of (phage_population or None, phage_transfer)
    """
    match = PHAGE_COLUMN_RE.match(str(name).strip())
    if match is None:
        raise ValueError(f"Cannot parse phage transfer from column {name!r}")
    population = match.group('population')
    if population is not None and population.lower() == 'phage':
        population = None
    return population, int(match.group('transfer'))


def score_to_binary(values) -> pd.Series:
    """
    Convert bench scores (1/0, +/-, clear/turbid, R/S ...) to 1.0 / 0.0.

    Untested cells (blank, NA, ND) become NaN. Anything else is an error, so
    a typo in the spreadsheet cannot silently become a negative.
    """
    values = pd.Series(values)
    text = values.astype(str).str.strip().str.lower()
    text = text.where(values.notna(), '')

    known = POSITIVE_SCORES | NEGATIVE_SCORES | MISSING_SCORES
    unknown = ~text.isin(known)
    if unknown.any():
        bad = sorted(values[unknown].astype(str).unique())
        raise ValueError(f"Unrecognised scores: {bad}")

    binary = pd.Series(np.nan, index=values.index, dtype=float)
    binary.loc[text.isin(POSITIVE_SCORES)] = 1.0
    binary.loc[text.isin(NEGATIVE_SCORES)] = 0.0
    return binary


def _check_columns(df: pd.DataFrame, required: List[str]):
    missing = [c for c in required if c not in df.columns]
    if missing:
        raise ValueError(f"Missing required columns: {missing}")


def melt_binary_matrix(df: pd.DataFrame, id_cols: List[str],
                       value_name: str, var_name: str) -> pd.DataFrame:
    """
    Melt a wide 0/1 matrix to long form, dropping untested cells.

    Args:
        df: Wide table
        id_cols: Columns identifying a row (kept as-is)
        value_name: Name of the binary outcome column
        var_name: Name of the column holding the former column headers

    Returns:
        Long DataFrame with an integer 0/1 outcome column
    """
    _check_columns(df, id_cols)
    value_cols = [c for c in df.columns if c not in id_cols]
    if not value_cols:
        raise ValueError("Table has no value columns to reshape")

    long_df = df.melt(id_vars=id_cols, value_vars=value_cols,
                      var_name=var_name, value_name=value_name)
    long_df[value_name] = score_to_binary(long_df[value_name])
    long_df = long_df.dropna(subset=[value_name]).reset_index(drop=True)

    if long_df.empty:
        raise ValueError("No tested cells left after reshaping")

    long_df[value_name] = long_df[value_name].astype(int)
    return long_df


def classify_time_shift(time_shift) -> pd.Categorical:
    """Label each time shift as past (<0), contemporary (0) or future (>0)."""
    shift = np.asarray(time_shift, dtype=float)
    labels = np.select([shift < 0, shift == 0], ['past', 'contemporary'],
                       default='future')
    return pd.Categorical(labels, categories=TIME_SHIFT_ORDER,
                          ordered=True).remove_unused_categories()


def infection_long(df: pd.DataFrame) -> pd.DataFrame:
    """
    Reshape the time-shift infectivity matrix to one row per clone x phage.

    Adds phage_population, phage_transfer, time_shift and time_shift_class.
    Phage columns without a population prefix are taken to come from the
    clone's own population.
    """
    long_df = melt_binary_matrix(df, INFECTION_ID_COLS,
                                 value_name='infected', var_name='phage')

    long_df['population'] = long_df['population'].astype(str)
    long_df['treatment'] = long_df['treatment'].astype(str)
    long_df['bacteria_transfer'] = pd.to_numeric(long_df['bacteria_transfer'])

    parsed = {name: parse_phage_column(name) for name in long_df['phage'].unique()}
    long_df['phage_population'] = long_df['phage'].map(lambda n: parsed[n][0])
    long_df['phage_population'] = long_df['phage_population'].fillna(long_df['population'])
    long_df['phage_transfer'] = long_df['phage'].map(lambda n: parsed[n][1])

    long_df['time_shift'] = long_df['phage_transfer'] - long_df['bacteria_transfer']
    long_df['time_shift_class'] = classify_time_shift(long_df['time_shift'])
    return long_df


def resistance_long(df: pd.DataFrame) -> pd.DataFrame:
    """Reshape the resistance table to one row per tested clone."""
    long_df = melt_binary_matrix(df, RESISTANCE_ID_COLS,
                                 value_name='resistant', var_name='clone')
    long_df['population'] = long_df['population'].astype(str)
    long_df['treatment'] = long_df['treatment'].astype(str)
    long_df['transfer'] = pd.to_numeric(long_df['transfer']).astype(int)
    return long_df


def density_long(df: pd.DataFrame) -> pd.DataFrame:
    """
    Reshape the density table (one T<k> column per transfer) to long form.

    Non-positive or missing densities cannot be log-transformed and are
    dropped. Adds log10_density.
    """
    _check_columns(df, DENSITY_ID_COLS)
    transfer_cols = [c for c in df.columns if TRANSFER_COLUMN_RE.match(str(c))]
    if not transfer_cols:
        raise ValueError("Density table has no T<k> transfer columns")

    long_df = df.melt(id_vars=DENSITY_ID_COLS, value_vars=transfer_cols,
                      var_name='transfer_label', value_name='density')
    long_df['transfer'] = long_df['transfer_label'].map(
        lambda c: int(TRANSFER_COLUMN_RE.match(str(c)).group('transfer'))
    )
    long_df['density'] = pd.to_numeric(long_df['density'], errors='coerce')
    long_df = long_df[long_df['density'] > 0].reset_index(drop=True)
    if long_df.empty:
        raise ValueError("No positive densities left after reshaping")

    long_df['population'] = long_df['population'].astype(str)
    long_df['treatment'] = long_df['treatment'].astype(str)
    long_df['organism'] = long_df['organism'].astype(str)
    long_df['log10_density'] = np.log10(long_df['density'])
    return long_df.drop(columns='transfer_label')


# ============================================================================
# Summaries
# ============================================================================

def aggregate_binary(df: pd.DataFrame, by: List[str], outcome: str) -> pd.DataFrame:
    """Per-group n, successes, proportion and binomial standard error."""
    summary = df.groupby(by, observed=True)[outcome].agg(
        n='count', successes='sum'
    ).reset_index()
    summary['proportion'] = summary['successes'] / summary['n']
    summary['se'] = np.sqrt(summary['proportion'] * (1 - summary['proportion'])
                            / summary['n'])
    return summary


def host_range(long_df: pd.DataFrame) -> Tuple[pd.DataFrame, pd.DataFrame]:
    """
    Infection-matrix breadth summaries.

    Returns:
        Tuple of (per-clone susceptibility range, per-phage host range)
    """
    clone_range = long_df.groupby(INFECTION_ID_COLS, observed=True)['infected'].agg(
        n_tested='count', n_infected='sum'
    ).reset_index()
    clone_range['fraction_infected'] = clone_range['n_infected'] / clone_range['n_tested']

    phage_range = long_df.groupby(['phage', 'phage_population', 'phage_transfer'],
                                  observed=True)['infected'].agg(
        n_tested='count', n_infected='sum'
    ).reset_index()
    phage_range['fraction_infected'] = phage_range['n_infected'] / phage_range['n_tested']
    return clone_range, phage_range
