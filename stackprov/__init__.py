"""Stack provisioner — install, verify, and roll back a local AI stack."""

__version__ = "0.1.0"
