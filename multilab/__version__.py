"""
Version information for the multi-lab design-validation pipeline.
"""

__version__ = "1.0.0"

# Component versions
SIMULATION_VERSION = "1.0.0"     # Hierarchical looking-time generator
PREPROCESSING_VERSION = "1.0.0"  # Exclusion and aggregation rules
MODELING_VERSION = "1.0.0"       # Mixed-model engine and comparisons

VERSION_HISTORY = {
    "1.0.0": {
        "date": "2026-10-19",
        "description": "Initial release",
        "changes": [
            "Hierarchical looking-time simulator",
            "Preregistered exclusion and aggregation",
            "Profiled-likelihood LME engine (ML/REML)",
            "Likelihood-ratio tests and per-group trends",
            "Moderator hypothesis suite with FDR correction",
        ]
    }
}


def get_version_info() -> str:
    """
    Get formatted version information string.

    Returns:
        Formatted string with version and component information
    """
    info = [
        f"Multi-lab design validation v{__version__}",
        "",
        "Component Versions:",
        f"  - Simulation: v{SIMULATION_VERSION}",
        f"  - Preprocessing: v{PREPROCESSING_VERSION}",
        f"  - Modeling: v{MODELING_VERSION}",
    ]
    return "\n".join(info)
