"""ecoseq: linked community-sequencing data and ecological statistics.

A CommunityDataSet ties together an abundance matrix, sample metadata,
taxonomic assignments and an optional phylogenetic tree. Transform and
agglomeration functions derive new, re-validated datasets; the diversity,
distance, ordination and network modules turn them into plain data
products for reporting.
"""

__version__ = "0.3.0"

from .dataset import CommunityDataSet, SampleMetadata, TaxonomyTable
from .errors import (
    EcoseqError,
    EmptySelectionError,
    InvalidArchetypeError,
    MalformedDatasetError,
    MissingTreeError,
    UnknownMeasureError,
    UnknownRankError,
    UnknownVariableError,
    ZeroSumSampleError,
)
from .tree import PhyloTree

__all__ = [
    "CommunityDataSet",
    "EcoseqError",
    "EmptySelectionError",
    "InvalidArchetypeError",
    "MalformedDatasetError",
    "MissingTreeError",
    "PhyloTree",
    "SampleMetadata",
    "TaxonomyTable",
    "UnknownMeasureError",
    "UnknownRankError",
    "UnknownVariableError",
    "ZeroSumSampleError",
]
