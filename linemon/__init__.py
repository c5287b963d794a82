"""linemon package for line-monitor."""

from .models import DefectRule, Defect, LineLevel
from .monitor import MonitorEngine
from .state import StatusSnapshot

__all__ = ["DefectRule", "Defect", "LineLevel", "MonitorEngine", "StatusSnapshot"]
