"""pgp-export command line interface."""
