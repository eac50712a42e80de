"""Command-line entry points.

``microservices-manager`` drives the service lifecycle and registry;
``managerw`` is the self-updating wrapper in front of it.
"""
