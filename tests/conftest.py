import matplotlib

matplotlib.use("Agg")

import numpy as np
import pandas as pd
import pytest

POPULATIONS = {"P1": "control", "P2": "control", "P3": "control",
               "P4": "H2O2", "P5": "H2O2", "P6": "H2O2"}

# Infection probability by time shift (past / contemporary / future)
INFECTION_P = {
    "control": {"past": 0.8, "contemporary": 0.5, "future": 0.25},
    "H2O2": {"past": 0.6, "contemporary": 0.5, "future": 0.4},
}


def _shift_class(shift):
    if shift < 0:
        return "past"
    if shift == 0:
        return "contemporary"
    return "future"


@pytest.fixture
def rng():
    return np.random.default_rng(20240611)


@pytest.fixture
def infection_wide(rng):
    """Time-shift matrix: 6 populations x 3 transfers x 4 clones vs T2/T4/T6 phages."""
    rows = []
    for population, treatment in POPULATIONS.items():
        for bacteria_transfer in (2, 4, 6):
            for clone in range(1, 5):
                row = {
                    "clone_id": f"{population}-T{bacteria_transfer}-c{clone}",
                    "population": population,
                    "treatment": treatment,
                    "bacteria_transfer": bacteria_transfer,
                }
                for phage_transfer in (2, 4, 6):
                    shift = _shift_class(phage_transfer - bacteria_transfer)
                    infected = rng.random() < INFECTION_P[treatment][shift]
                    row[f"T{phage_transfer}"] = "+" if infected else "-"
                rows.append(row)
    wide = pd.DataFrame(rows)
    # a couple of untested cells
    wide.loc[0, "T6"] = ""
    wide.loc[5, "T2"] = "ND"
    return wide


@pytest.fixture
def resistance_wide(rng):
    """Resistance of 12 clones per population at four transfers."""
    rows = []
    for population, treatment in POPULATIONS.items():
        offset = rng.normal(0, 0.3)
        for transfer in (1, 3, 5, 7):
            slope = 0.45 if treatment == "H2O2" else 0.25
            logit = -2.0 + slope * transfer + offset
            p = 1 / (1 + np.exp(-logit))
            row = {"population": population, "treatment": treatment,
                   "transfer": transfer}
            for clone in range(1, 13):
                row[f"clone_{clone}"] = "R" if rng.random() < p else "S"
            rows.append(row)
    return pd.DataFrame(rows)


@pytest.fixture
def density_wide(rng):
    """Bacterial and phage densities per ml at transfers T1..T5."""
    rows = []
    for population, treatment in POPULATIONS.items():
        for organism, base in (("bacteria", 9.0), ("phage", 10.0)):
            offset = rng.normal(0, 0.2)
            row = {"population": population, "treatment": treatment,
                   "organism": organism}
            for transfer in range(1, 6):
                effect = -0.4 if treatment == "H2O2" else 0.0
                log10 = base + effect - 0.05 * transfer + offset + rng.normal(0, 0.15)
                row[f"T{transfer}"] = 10 ** log10
            rows.append(row)
    wide = pd.DataFrame(rows)
    wide.loc[0, "T5"] = 0
    return wide


@pytest.fixture
def binary_two_factor(rng):
    """Long binary data with a strong effect of a and no effect of b."""
    n = 600
    a = rng.choice(["a1", "a2", "a3"], size=n)
    b = rng.choice(["b1", "b2"], size=n)
    p = np.select([a == "a1", a == "a2"], [0.15, 0.5], default=0.85)
    y = (rng.random(n) < p).astype(int)
    return pd.DataFrame({"y": y, "a": a, "b": b})


@pytest.fixture
def binary_empty_cell(rng):
    """3 x 3 binary design with no observations in the a3:b3 cell."""
    n = 900
    a = rng.choice(["a1", "a2", "a3"], size=n)
    b = rng.choice(["b1", "b2", "b3"], size=n)
    p = np.select([a == "a1", a == "a2"], [0.2, 0.5], default=0.8)
    y = (rng.random(n) < p).astype(int)
    df = pd.DataFrame({"y": y, "a": a, "b": b})
    return df[~((df["a"] == "a3") & (df["b"] == "b3"))].reset_index(drop=True)
