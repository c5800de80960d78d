"""
Figures shared by both analysis pipelines.
"""
import matplotlib

matplotlib.use('Agg')

import matplotlib.pyplot as plt
import numpy as np
import pandas as pd
import seaborn as sns

from coevo_stats.common import FIGURE_DPI, treatment_palette


def set_style():
    sns.set_style("whitegrid")
    plt.rcParams['figure.dpi'] = FIGURE_DPI
    plt.rcParams['font.size'] = 10
    plt.rcParams['axes.labelsize'] = 11
    plt.rcParams['axes.titlesize'] = 12


def save_figure(fig, path):
    """Save at publication resolution and release the figure."""
    fig.tight_layout()
    fig.savefig(path, dpi=FIGURE_DPI, bbox_inches='tight')
    plt.close(fig)
    print(f"  Saved: {path}")
    return path


def plot_infection_heatmap(long_df: pd.DataFrame, path):
    """
    Clone x phage infection matrix, one panel per treatment.

    Rows are bacterial clones ordered by population and transfer, columns are
    phages ordered by transfer. Untested cells are left blank.
    """
    treatments = sorted(long_df['treatment'].unique())
    fig, axes = plt.subplots(1, len(treatments),
                             figsize=(7 * len(treatments), 8), squeeze=False)

    for ax, treatment in zip(axes[0], treatments):
        sub = long_df[long_df['treatment'] == treatment]
        matrix = sub.pivot_table(
            index=['population', 'bacteria_transfer', 'clone_id'],
            columns=['phage_transfer', 'phage'],
            values='infected',
            aggfunc='max',
        ).sort_index().sort_index(axis=1)

        sns.heatmap(matrix, ax=ax, cmap=['#f7f7f7', '#252525'], vmin=0, vmax=1,
                    cbar=False, linewidths=0.2, linecolor='white',
                    xticklabels=[c[1] for c in matrix.columns],
                    yticklabels=[f"{i[0]} T{i[1]} {i[2]}" for i in matrix.index])
        ax.set_xlabel('Phage isolate', fontsize=11, fontweight='bold')
        ax.set_ylabel('Bacterial clone', fontsize=11, fontweight='bold')
        ax.set_title(f"{treatment}", fontsize=12, fontweight='bold', loc='left')
        ax.tick_params(axis='both', labelsize=6)

    fig.suptitle('Infection matrix (black = infected)', fontsize=14, fontweight='bold')
    return save_figure(fig, path)


def plot_time_shift(summary: pd.DataFrame, path):
    """Infection proportion +/- SE by time-shift class and treatment."""
    palette = treatment_palette(sorted(summary['treatment'].unique()))
    fig, ax = plt.subplots(figsize=(8, 6))

    for treatment, sub in summary.groupby('treatment', sort=True):
        sub = sub.sort_values('time_shift_class')
        ax.errorbar(sub['time_shift_class'].astype(str), sub['proportion'],
                    yerr=sub['se'], marker='o', markersize=8, capsize=5,
                    linewidth=2, color=palette[treatment], label=treatment)

    ax.set_xlabel('Phage relative to host', fontsize=12, fontweight='bold')
    ax.set_ylabel('Proportion infected', fontsize=12, fontweight='bold')
    ax.set_ylim(-0.05, 1.05)
    ax.set_title('Time-shift infectivity', fontsize=14, fontweight='bold', pad=20)
    ax.legend(title='Treatment', loc='best')
    return save_figure(fig, path)


def plot_emms(emm_table: pd.DataFrame, x: str, hue: str, path, ylabel: str):
    """Estimated marginal means (response scale) with confidence intervals."""
    hue_levels = list(pd.unique(emm_table[hue]))
    palette = treatment_palette(hue_levels) if hue == 'treatment' else dict(
        zip(hue_levels, sns.color_palette('Set2', len(hue_levels)))
    )
    x_levels = list(pd.unique(emm_table[x]))
    offsets = np.linspace(-0.15, 0.15, len(hue_levels)) if len(hue_levels) > 1 else [0.0]

    fig, ax = plt.subplots(figsize=(9, 6))
    for offset, level in zip(offsets, hue_levels):
        sub = emm_table[emm_table[hue] == level]
        positions = [x_levels.index(v) + offset for v in sub[x]]
        ax.errorbar(positions, sub['response'],
                    yerr=[sub['response'] - sub['response_lower'],
                          sub['response_upper'] - sub['response']],
                    fmt='o', markersize=8, capsize=5, linewidth=2,
                    color=palette[level], label=str(level))

    ax.set_xticks(range(len(x_levels)))
    ax.set_xticklabels([str(v) for v in x_levels])
    ax.set_xlabel(x.replace('_', ' ').capitalize(), fontsize=12, fontweight='bold')
    ax.set_ylabel(ylabel, fontsize=12, fontweight='bold')
    ax.set_title('Estimated marginal means (95% CI)', fontsize=14,
                 fontweight='bold', pad=20)
    ax.legend(title=hue.replace('_', ' ').capitalize(), loc='best')
    return save_figure(fig, path)


def plot_trajectories(summary: pd.DataFrame, x: str, y: str, err: str, hue: str,
                      path, ylabel: str, log_y: bool = False, title: str = ''):
    """Mean +/- SE through time, one line per treatment."""
    palette = treatment_palette(sorted(summary[hue].unique()))
    fig, ax = plt.subplots(figsize=(9, 6))

    for level, sub in summary.groupby(hue, sort=True):
        sub = sub.sort_values(x)
        ax.errorbar(sub[x], sub[y], yerr=sub[err], marker='o', markersize=7,
                    capsize=4, linewidth=2, color=palette[level], label=level)

    if log_y:
        ax.set_yscale('log')
    ax.set_xlabel(x.replace('_', ' ').capitalize(), fontsize=12, fontweight='bold')
    ax.set_ylabel(ylabel, fontsize=12, fontweight='bold')
    if title:
        ax.set_title(title, fontsize=14, fontweight='bold', pad=20)
    ax.legend(title=hue.capitalize(), loc='best')
    return save_figure(fig, path)


def plot_hl_calibration(hl_table: pd.DataFrame, path, title: str = ''):
    """Observed vs expected events per Hosmer-Lemeshow group."""
    fig, ax = plt.subplots(figsize=(6, 6))
    if not hl_table.empty:
        observed = hl_table['observed'] / hl_table['n']
        ax.scatter(hl_table['mean_p'], observed, s=80, color='#2c7fb8',
                   edgecolor='black', linewidth=1, zorder=3)
    ax.plot([0, 1], [0, 1], 'k--', alpha=0.5)
    ax.set_xlim(0, 1)
    ax.set_ylim(0, 1)
    ax.set_xlabel('Mean predicted probability', fontsize=11, fontweight='bold')
    ax.set_ylabel('Observed proportion', fontsize=11, fontweight='bold')
    ax.set_title(title or 'Calibration (Hosmer-Lemeshow groups)', fontsize=12,
                 fontweight='bold')
    return save_figure(fig, path)
