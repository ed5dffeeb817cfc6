"""Operator engine for conda environment import, upgrade and export.

Classifies manifests by install risk, picks direct or supervised
execution, and records one outcome per environment.
"""
