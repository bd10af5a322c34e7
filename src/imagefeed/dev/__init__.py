"""Developer command-line entry points for running jobs without a broker."""
