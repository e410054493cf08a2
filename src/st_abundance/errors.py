"""Exceptions shared by the loaders, geospatial helpers and aggregators."""

from __future__ import annotations

from datetime import date
from typing import Optional


class DataShapeError(ValueError):
    """Raster input whose layout or reference system cannot be used as given.

    Raised for stacks with an unexpected layout, week grids that disagree
    with the rest of their stack, and regions in a different CRS than the
    raster.  ``species``, ``week`` (0-based index) and ``date`` identify the
    unit of work when known.
    """

    def __init__(
        self,
        message: str,
        *,
        species: Optional[str] = None,
        week: Optional[int] = None,
        date: Optional[date] = None,
    ):
        self.message = message
        self.species = species
        self.week = week
        self.date = date
        super().__init__(self._with_context(message))

    def _with_context(self, message: str) -> str:
        context = []
        if self.species:
            context.append(f"species={self.species!r}")
        if self.week is not None:
            context.append(f"week={self.week}")
        if self.date is not None:
            context.append(f"date={self.date.isoformat()}")
        if not context:
            return message
        return f"{message} ({', '.join(context)})"

    def for_unit(
        self,
        *,
        species: Optional[str] = None,
        week: Optional[int] = None,
        date: Optional[date] = None,
    ) -> "DataShapeError":
        """Return a copy of the error with missing context filled in."""

        return DataShapeError(
            self.message,
            species=self.species or species,
            week=self.week if self.week is not None else week,
            date=self.date if self.date is not None else date,
        )
