"""Probe to gene annotation."""

from arrayde.annotation.probe_mapping import (
    SEPARATOR,
    UNMAPPED,
    GeneReference,
    ProbeAnnotation,
    ProbeGeneLookup,
    TableLookup,
    MyGeneInfoLookup,
    ProbeAnnotator,
)

__all__ = [
    'SEPARATOR',
    'UNMAPPED',
    'GeneReference',
    'ProbeAnnotation',
    'ProbeGeneLookup',
    'TableLookup',
    'MyGeneInfoLookup',
    'ProbeAnnotator',
]
