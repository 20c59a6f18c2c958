"""Command line tool for building the images of a pipeline."""
