"""
Shared configuration for both analysis pipelines.
"""
from pathlib import Path

import seaborn as sns

# ============================================================================
# Configuration
# ============================================================================

DATA_DIR = Path("data")
OUTPUT_DIR = Path("outputs")

# Statistical parameters
FDR_ALPHA = 0.05     # Benjamini-Hochberg significance threshold
LRT_ALPHA = 0.05     # Terms with LRT p >= LRT_ALPHA are dropped
HL_GROUPS = 10       # Hosmer-Lemeshow groups (deciles of risk)
CI_LEVEL = 0.95      # Confidence level for EMMs and coefficients

# Figures
FIGURE_DPI = 300

# Colour scheme (consistent across all plots)
COLORS = {
    'control': '#2c7fb8',
    'H2O2': '#d95f0e',
}
FALLBACK_PALETTE = 'Set2'

TIME_SHIFT_ORDER = ['past', 'contemporary', 'future']


def banner(title, char='='):
    """Print a step banner."""
    print(f"\n{char * 70}")
    print(title)
    print(f"{char * 70}")


def treatment_palette(levels):
    """Map treatment levels to colours, falling back to a seaborn palette."""
    levels = list(levels)
    fallback = sns.color_palette(FALLBACK_PALETTE, len(levels))
    return {
        level: COLORS.get(str(level), fallback[i])
        for i, level in enumerate(levels)
    }
