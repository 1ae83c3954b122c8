"""Analysis pipeline for the red gum understory survey.

Pipeline phases (in order):
  01_data_prep             — Clean floristic and stem records, build plot tables
  02_flood_groups          — Flood-history classification (+ imputation check)
  03_stem_model            — Negative-binomial stem density model
  04_occurrence_lv         — Latent-variable probit occurrence model
  05_occurrence_covariates — Flood-group and stem-density covariate variants
  06_variance_partition    — Per-species variance partitioning

Shared infrastructure at root: run_context.py, report.py, model_spec.py,
sampling.py, posterior.py, plotting.py

Uses a PEP 302 meta-path finder so that ``from analysis.data_prep import X``
transparently loads ``analysis.01_data_prep.data_prep``.
"""

from __future__ import annotations

import importlib
import sys
import types
from importlib.abc import MetaPathFinder
from importlib.machinery import ModuleSpec

_MODULE_MAP: dict[str, str] = {
    "data_prep": "01_data_prep",
    "data_prep_report": "01_data_prep",
    "flood_groups": "02_flood_groups",
    "flood_imputation": "02_flood_groups",
    "flood_groups_report": "02_flood_groups",
    "stem_model": "03_stem_model",
    "stem_model_report": "03_stem_model",
    "occurrence_lv": "04_occurrence_lv",
    "occurrence_lv_report": "04_occurrence_lv",
    "occurrence_covariates": "05_occurrence_covariates",
    "occurrence_covariates_report": "05_occurrence_covariates",
    "variance_partition": "06_variance_partition",
    "variance_partition_report": "06_variance_partition",
}


class _AliasLoader:
    """Loader that imports the real module and registers it under the alias."""

    def __init__(self, real_name: str) -> None:
        self.real_name = real_name

    def create_module(self, spec: ModuleSpec) -> types.ModuleType | None:
        return None  # use default semantics

    def exec_module(self, module: types.ModuleType) -> None:
        real = importlib.import_module(self.real_name)
        module.__dict__.update(real.__dict__)
        module.__file__ = real.__file__
        module.__loader__ = real.__loader__
        if hasattr(real, "__path__"):
            module.__path__ = real.__path__


class _AnalysisRedirectFinder(MetaPathFinder):
    """Redirect ``analysis.<name>`` imports to ``analysis.<NN_subdir>.<name>``."""

    def find_spec(
        self,
        fullname: str,
        path: object = None,
        target: types.ModuleType | None = None,
    ) -> ModuleSpec | None:
        parts = fullname.split(".")
        if len(parts) == 2 and parts[0] == "analysis" and parts[1] in _MODULE_MAP:
            name = parts[1]
            real = f"analysis.{_MODULE_MAP[name]}.{name}"
            return ModuleSpec(fullname, _AliasLoader(real))
        return None


sys.meta_path.insert(0, _AnalysisRedirectFinder())
