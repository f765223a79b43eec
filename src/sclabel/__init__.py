"""sclabel: scRNA-seq clustering and cell type label harmonization."""

__version__ = "0.1.0"
