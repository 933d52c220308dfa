# Importing the stage modules registers them with NormalizationPass.
from .handler import ConfigParam, NormalizationPass, PassContext
from .switch_resolver import SwitchResolver
from .junk import JunkEliminator
from .constant_folder import ConstantFolder
from .exception_regions import ExceptionRegionReconciler

__all__ = [
    "ConfigParam",
    "NormalizationPass",
    "PassContext",
    "SwitchResolver",
    "JunkEliminator",
    "ConstantFolder",
    "ExceptionRegionReconciler",
]
