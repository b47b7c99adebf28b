"""
Raw intensity ingestion, sample metadata and group assignment.

Writers live in ``arrayde.io.writers`` (they depend on the statistics layer).
"""

from arrayde.io.adapters import (
    Platform,
    SignalScale,
    RawIntensities,
    TwoChannelRaw,
    RawIntensityAdapter,
    SingleChannelAdapter,
    BeadArrayAdapter,
    TwoChannelAdapter,
    classify_bead_files,
    check_sample_alignment,
    get_adapter,
)
from arrayde.io.loaders import (
    SampleRecord,
    read_intensity_table,
    read_sample_file,
    combine_sample_tables,
)
from arrayde.io.metadata import (
    MetadataSource,
    TableMetadataSource,
    RawIntensitySource,
    DirectorySource,
    read_table,
)
from arrayde.io.phenotype import GroupRule, GroupAssigner

__all__ = [
    # Raw containers and adapters
    'Platform',
    'SignalScale',
    'RawIntensities',
    'TwoChannelRaw',
    'RawIntensityAdapter',
    'SingleChannelAdapter',
    'BeadArrayAdapter',
    'TwoChannelAdapter',
    'classify_bead_files',
    'check_sample_alignment',
    'get_adapter',
    # Table loading
    'SampleRecord',
    'read_intensity_table',
    'read_sample_file',
    'combine_sample_tables',
    # Sources
    'MetadataSource',
    'TableMetadataSource',
    'RawIntensitySource',
    'DirectorySource',
    'read_table',
    # Groups
    'GroupRule',
    'GroupAssigner',
]
