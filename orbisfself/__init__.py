"""Convert x86-64 ELF files into Orbis ELF and fake signed ELF (FSELF) images."""

__version__ = "0.1.0"
__all__ = ["__version__"]