"""Clients for the services PetRadar depends on."""
