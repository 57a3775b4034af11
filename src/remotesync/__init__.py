"""remotesync - keep a local tree in sync with an SFTP/FTP/FTPS server."""

__version__ = "0.1.0"
