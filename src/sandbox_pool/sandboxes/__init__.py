"""Sandbox providers for the sandbox pool."""

from .base import BaseSandbox
from .e2b import E2BSandbox
from .sandbox_factory import SandboxFactory

__all__ = ["BaseSandbox", "E2BSandbox", "SandboxFactory"]
