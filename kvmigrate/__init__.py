# SPDX-License-Identifier: LGPL-3.0-or-later
# kvmigrate/__init__.py
__version__ = "0.1.0"
