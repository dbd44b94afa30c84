__title__ = "cryptogains"
__version__ = "0.3.0"
