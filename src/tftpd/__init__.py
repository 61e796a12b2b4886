"""tftpd: a TFTP (RFC 1350) transfer engine.

- ``packet``: wire codec for RRQ/WRQ/DATA/ACK/ERROR
- ``session``: per-transfer lockstep state machines with retransmission
- ``dispatcher``: request intake and routing by transfer ID
- ``storage``: data source/sink contracts and a directory-backed store
- ``client``: stop-and-wait client used by the CLI and tests
"""

__all__ = []
