"""managed-lhapdf: LHAPDF with PDF sets downloaded and cached on first use."""

__version__ = "0.1.0"

from managed_lhapdf.manager import LhapdfManager, get_manager


def lookup_pdf(lhaid):
    """Convert an LHAID to a (set name, member) pair, or None if unknown."""
    return get_manager().lookup_pdf(lhaid)


def mk_pdf(setname, member=0):
    """Create a PDF member by set name, downloading the set if necessary."""
    return get_manager().mk_pdf(setname, member)


def mk_pdf_lhaid(lhaid):
    """Create a PDF member by LHAID."""
    return get_manager().mk_pdf_lhaid(lhaid)


def mk_pdf_setname_nmem(setname_nmem):
    """Create a PDF member from a ``<setname>/<member>`` string."""
    return get_manager().mk_pdf_setname_nmem(setname_nmem)


def get_pdfset(setname):
    """Create the metadata object of a PDF set, downloading it if necessary."""
    return get_manager().get_pdfset(setname)


def set_verbosity(verbosity):
    get_manager().set_verbosity(verbosity)


def verbosity():
    return get_manager().verbosity()


__all__ = [
    "LhapdfManager",
    "get_manager",
    "lookup_pdf",
    "mk_pdf",
    "mk_pdf_lhaid",
    "mk_pdf_setname_nmem",
    "get_pdfset",
    "set_verbosity",
    "verbosity",
    "__version__",
]
