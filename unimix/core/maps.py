"""
MODULE: BASE_CALIBRATION_MAPS
GRID: 16 x 16 (ENGINE LOAD x RPM)

DESCRIPTION:
    The fuel (target AFR) and ignition (degrees advance) tables the
    piggyback overlays on the factory calibration.

    Rows run from full load (row 0, 99% load) down to idle (row 15, 0%),
    in 6.6% steps. Columns run from 500 RPM upward in 500 RPM steps.

    LIVE TRACE:
    The cell the engine is currently running in is found from RPM and
    throttle position (used as the load proxy). Out-of-range readings pin
    to the nearest edge of the table.
"""

import logging
import math
from typing import Any, List, Optional, Tuple

import numpy as np

logger = logging.getLogger("UNIMIX.CORE.MAPS")

MAP_SIZE = 16
LOAD_STEP = 6.6       # % load per row
RPM_STEP = 500.0      # RPM per column
HIGH_LOAD = 60.0      # % load above which the high-load calibration rewrites cells

MAP_FUEL = "FUEL"
MAP_IGNITION = "IGNITION"

HIGH_LOAD_AFR = 11.5          # Fuel cells above HIGH_LOAD are set to this
HIGH_LOAD_ADVANCE = 2.0       # Ignition cells above HIGH_LOAD gain this many degrees

Cell = Tuple[int, int]

LOAD_AXIS = (MAP_SIZE - 1 - np.arange(MAP_SIZE)) * LOAD_STEP
RPM_AXIS = np.arange(MAP_SIZE) * RPM_STEP + RPM_STEP


def cell_index(rpm: float, load: float) -> Cell:
    """(row, col) of the cell for a live RPM / load reading."""
    rpm = rpm if math.isfinite(rpm) else 0.0
    load = load if math.isfinite(load) else 0.0

    load_idx = math.floor(min(max(load, 0.0) / LOAD_STEP, MAP_SIZE - 1))
    col = math.floor(min(max(rpm, 0.0) / RPM_STEP, MAP_SIZE - 1))
    return MAP_SIZE - 1 - load_idx, col


def _sanitize(value: Any) -> float:
    # Blank or garbage input zeroes the cell
    try:
        number = float(value)
    except (TypeError, ValueError):
        return 0.0
    return number if math.isfinite(number) else 0.0


class BaseMap:
    """
    One 16x16 calibration table backed by a numpy array.
    """
    def __init__(self, kind: str, cells: Optional[np.ndarray] = None):
        if kind not in (MAP_FUEL, MAP_IGNITION):
            raise ValueError(f"Unknown map type: {kind}")
        self.kind = kind
        self.cells = baseline_cells(kind) if cells is None else np.array(cells, dtype=float)
        if self.cells.shape != (MAP_SIZE, MAP_SIZE):
            raise ValueError(f"{kind} map must be {MAP_SIZE}x{MAP_SIZE}, got {self.cells.shape}")

    def lookup(self, rpm: float, load: float) -> float:
        row, col = cell_index(rpm, load)
        return float(self.cells[row, col])

    def get_cell(self, row: int, col: int) -> float:
        self._check(row, col)
        return float(self.cells[row, col])

    def set_cell(self, row: int, col: int, value: Any) -> float:
        self._check(row, col)
        clean = _sanitize(value)
        self.cells[row, col] = clean
        return clean

    def adjust_cell(self, row: int, col: int, delta: float) -> float:
        return self.set_cell(row, col, self.get_cell(row, col) + _sanitize(delta))

    def calibrate_high_load(self) -> int:
        """
        Precision high-load pass. Every row above HIGH_LOAD is rewritten:
        fuel cells to HIGH_LOAD_AFR, ignition cells advanced by
        HIGH_LOAD_ADVANCE. Returns the number of cells touched.
        """
        rows = LOAD_AXIS > HIGH_LOAD
        if self.kind == MAP_FUEL:
            self.cells[rows, :] = HIGH_LOAD_AFR
        else:
            self.cells[rows, :] += HIGH_LOAD_ADVANCE

        touched = int(rows.sum()) * MAP_SIZE
        logger.info(f"High-load calibration applied to {self.kind} map ({touched} cells)")
        return touched

    def to_list(self) -> List[List[float]]:
        return self.cells.tolist()

    def _check(self, row: int, col: int):
        if not (0 <= row < MAP_SIZE and 0 <= col < MAP_SIZE):
            raise IndexError(f"Cell ({row}, {col}) outside {MAP_SIZE}x{MAP_SIZE} {self.kind} map")


def baseline_cells(kind: str) -> np.ndarray:
    load = LOAD_AXIS[:, np.newaxis]
    rpm = RPM_AXIS[np.newaxis, :]
    if kind == MAP_FUEL:
        return 14.7 - load / 25.0 - rpm / 8000.0
    return 35.0 - load / 5.0 + rpm / 2000.0
