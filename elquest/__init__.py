"""elquest - build Emacs Lisp packages from recipes into a local archive and install them."""

__version__ = "1.0.0"
