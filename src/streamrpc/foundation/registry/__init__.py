"""Procedure registry: names, input contracts and dispatch."""

from .registry import Handler, NoInput, Procedure, ProcedureRegistry, format_validation_error

__all__ = ["Handler", "NoInput", "Procedure", "ProcedureRegistry", "format_validation_error"]
