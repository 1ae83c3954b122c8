"""Configuration constants for the red gum understory analysis."""

DEFAULT_SURVEY = "2013"

DATA_ROOT = "data"
RESULTS_ROOT = "results"

# Study design: 22 sites x 3 nine-hectare plots
N_SITES = 22
PLOTS_PER_SITE = 3
N_PLOTS = N_SITES * PLOTS_PER_SITE
QUADRATS_PER_PLOT = 3
SUBPLOTS_PER_PLOT = 10
SUBPLOT_AREA_HA = 0.1

# Raw input files (under data/<survey>/raw/)
RAW_FILES = {
    "sites": "sites.csv",
    "floristics": "floristics.csv",
    "traits": "species_traits.csv",
    "stems": "stem_counts.csv",
    "inundation": "inundation.csv",
}

# Taxa identified only to genus (or not at all) are dropped before analysis
INDETERMINATE_PATTERN = r"(?i)unknown|\bspp?\.|indeterminate"

# Field diameter classes (1-11) collapse to six broad modeling classes
FIELD_SIZE_CLASSES = {
    1: "seedling",
    2: "sapling",
    3: "<10 cm",
    4: "10-20 cm",
    5: "20-30 cm",
    6: "30-40 cm",
    7: "40-60 cm",
    8: "60-80 cm",
    9: "80-100 cm",
    10: "100-150 cm",
    11: ">150 cm",
}
FIELD_TO_BROAD_CLASS = {1: 1, 2: 1, 3: 2, 4: 2, 5: 3, 6: 3, 7: 4, 8: 4, 9: 5, 10: 6, 11: 6}
BROAD_SIZE_CLASSES = {
    1: "regeneration",
    2: "<20 cm",
    3: "20-40 cm",
    4: "40-80 cm",
    5: "80-100 cm",
    6: ">100 cm",
}

# Flood history classification
N_FLOOD_GROUPS = 3
INUNDATION_THRESHOLD = 0.0  # proportion above which a plot counts as inundated
FLOOD_DISTANCE_METRIC = "jaccard"
FLOOD_OVERRIDE_PLOT = 47  # ambiguous between groups 2 and 3 on the dendrogram
FLOOD_OVERRIDE_NEIGHBOURS = 3
N_IMPUTATIONS = 20
IMPUTATION_WORKERS = 4

# Occurrence models
MIN_SPECIES_PLOTS = 5  # rarer species carry too little information for loadings
N_LATENT = 2

# Sampler defaults
N_SAMPLES = 2000
N_TUNE = 2000
N_CHAINS = 4
RANDOM_SEED = 42

# Convergence thresholds
RHAT_THRESHOLD = 1.1
ESS_THRESHOLD = 400
GEWEKE_Z = 1.96
MAX_DIVERGENCES = 10
