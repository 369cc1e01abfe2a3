"""In-memory control plane for testing the engine without Azure.

Usage:
    from control_plane_mock import FakeControlPlane, make_entity

    plane = FakeControlPlane()
    plane.add_management_group("tenant-root")
    plane.add_management_group("alz", parent="tenant-root")
    plane.inject_transient("create_or_update", "PolicyAssignment:alz:deny-pip", times=2)
"""

from .state import FakeControlPlane, make_entity

__all__ = [
    "FakeControlPlane",
    "make_entity",
]
