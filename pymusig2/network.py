"""
In-process message channels between a coordinator and its participants.

Every participant has one queue towards the coordinator and one queue from it,
both keyed by participant id. Messages are opaque to the channels (serialized
protocol messages, lists of them, or None to signal an abort).
"""

import asyncio


class CoordinatorChannels:
    def __init__(self, inboxes, outboxes):
        self.inboxes = inboxes
        self.outboxes = outboxes

    def broadcast(self, m):
        for queue in self.outboxes.values():
            queue.put_nowait(m)

    async def receive_from(self, participant_id):
        return await self.inboxes[participant_id].get()


class ParticipantChannel:
    def __init__(self, inbox, outbox):
        self.inbox = inbox
        self.outbox = outbox

    # Send m to coordinator
    def send(self, m):
        self.outbox.put_nowait(m)

    async def receive(self):
        return await self.inbox.get()


def connect(participant_ids):
    """Create the coordinator's channels and one channel per participant id."""
    to_coord = {pid: asyncio.Queue() for pid in participant_ids}
    from_coord = {pid: asyncio.Queue() for pid in participant_ids}
    participant_chans = {pid: ParticipantChannel(from_coord[pid], to_coord[pid])
                         for pid in participant_ids}
    return CoordinatorChannels(to_coord, from_coord), participant_chans
