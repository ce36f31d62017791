from .builders import ControllerBuilder
from .manager import Manager, signal_handler

__all__ = [
    'ControllerBuilder',
    'Manager',
    'signal_handler',
]
