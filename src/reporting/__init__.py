"""Run reporting."""

from reporting.report import (
    SuggestionCategory,
    category_for,
    persist,
    render,
    report_filename,
    success_rate,
    suggestion_for,
    to_dict,
)

__all__ = [
    'SuggestionCategory',
    'category_for',
    'persist',
    'render',
    'report_filename',
    'success_rate',
    'suggestion_for',
    'to_dict',
]
