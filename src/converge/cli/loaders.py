"""
Loading of the user code that defines reconcilers.

Reconcilers register themselves at import time, through
`converge.controller(kind)` decorators or `converge.register(...)`, so that
code has to be loaded before the manager starts:

* files, `converge run widgets.py`; a directory loads every `*.py` in it
* modules, `converge run -m widgets`; packages are walked completely

Everything is loaded in the order given. Any failure is a ConfigError.
"""

import importlib
import importlib.util
import pathlib
import pkgutil
import sys

from ..exceptions import ConfigError


def _files(path):
    path = pathlib.Path(path)
    if path.is_dir():
        return sorted(p for p in path.glob('*.py') if p.is_file())
    if path.is_file():
        return [path]
    raise ConfigError(f'{path}: no such file or directory')


def load_file(path):
    path = pathlib.Path(path).resolve()
    directory = str(path.parent)
    if directory not in sys.path:
        # Lets the file import its siblings.
        sys.path.insert(0, directory)
    name = f'_converge_{path.stem}_{abs(hash(str(path))):x}'
    spec = importlib.util.spec_from_file_location(name, path)
    if spec is None or spec.loader is None:
        raise ConfigError(f'{path}: not a python file')
    module = importlib.util.module_from_spec(spec)
    sys.modules[name] = module
    try:
        spec.loader.exec_module(module)
    except Exception as e:
        del sys.modules[name]
        raise ConfigError(f'can not load {path}: {e!r}') from e
    return module


def import_module(name):
    """Import `name` and, for packages, every module below it."""
    try:
        module = importlib.import_module(name)
        modules = [module]
        if hasattr(module, '__path__'):
            for info in pkgutil.walk_packages(module.__path__, prefix=f'{name}.'):
                modules.append(importlib.import_module(info.name))
    except Exception as e:
        raise ConfigError(f'can not import {name}: {e!r}') from e
    return modules


def load(paths=(), modules=()):
    """Load `paths` then `modules`, return the loaded modules."""
    loaded = []
    for path in paths or ():
        for file in _files(path):
            loaded.append(load_file(file))
    for name in modules or ():
        loaded.extend(import_module(name))
    return loaded
