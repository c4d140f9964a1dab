"""
Locations module.

Physical storage is a tree: zones (rooms, shelving areas) contain boxes.
The custody engine only reads this tree; creating and retiring locations is
an administrative action recorded to the generic audit trail.
"""
