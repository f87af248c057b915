
__version__ = "0.1.0"
__banner__ = \
"""
# asyshare %s 
# scoped one-time-code file transfer
""" % __version__
