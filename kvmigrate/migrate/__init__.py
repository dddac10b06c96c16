# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/migrate/__init__.py
from .convergence import ConvergenceMonitor, ConvergencePolicy, ConvergenceResult
from .phases import Interruptible, PhasedMigration
from .qemu_migrate import QemuMigrate, migrate
from .task import MigrationOptions, MigrationTask, MigrationType, Phase

__all__ = [
    "ConvergenceMonitor",
    "ConvergencePolicy",
    "ConvergenceResult",
    "Interruptible",
    "PhasedMigration",
    "QemuMigrate",
    "migrate",
    "MigrationOptions",
    "MigrationTask",
    "MigrationType",
    "Phase",
]
