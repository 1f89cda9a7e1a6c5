"""Ephemeral EC2 build nodes for GEOS-Chem container images."""
