"""Redgum - river red gum floodplain understory analysis."""

__version__ = "0.1.0"

from redgum.survey import SurveyDesign as SurveyDesign
