"""Task mailbox protocol over a flat, untrusted object store.

Tasks exist only as named objects: ``{epochMillis}-{taskId}.{in|out}.{dat|sig|err}``.
Clients write ``in.dat`` and ``in.sig``; a server picks the oldest task with no
``out.*`` objects, runs the external command and writes ``out.dat`` (or
``out.err``) plus ``out.sig``; the client verifies the answer and deletes all
objects of its task. Objects older than twice the task expiration window are
swept by whichever peer lists the store next.

There is no claim marker: two servers polling the same store may both run the
same task. Run a single server per store when the command is not idempotent.
"""

from remote_task.mailbox.assembler import Task, TaskSlots, assemble
from remote_task.mailbox.client import ClientSession
from remote_task.mailbox.naming import Direction, Kind, StoreObject, decode_name, encode_name
from remote_task.mailbox.server import MailboxServer, ServerRunSummary

__all__ = [
    "ClientSession",
    "Direction",
    "Kind",
    "MailboxServer",
    "ServerRunSummary",
    "StoreObject",
    "Task",
    "TaskSlots",
    "assemble",
    "decode_name",
    "encode_name",
]
