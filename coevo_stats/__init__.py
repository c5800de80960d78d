"""
Statistical analysis of phage-bacteria co-evolution under oxidative stress.

Two analysis pipelines share the helpers in this package:
    infectivity - time-shift infection matrix (host range, GLM, Tukey EMMs)
    resistance  - resistance evolution and population densities (GLM/GLMM/LMM)
"""

__version__ = "1.0.0"
