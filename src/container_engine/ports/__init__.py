"""Ports: inbound contracts and outbound collaborator interfaces."""
