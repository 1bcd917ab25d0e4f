"""Aggregate model imports for metadata.create_all()."""

from stockalert.models.state_record import StateRecord  # noqa: F401
