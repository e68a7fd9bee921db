"""TierDeploy — provisions a web front end and a database back end on one subnet."""

__version__ = "0.1.0"
