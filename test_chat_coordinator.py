import json

from chat_coordinator import RoomCoordinator, ChatText, BlockState


class FakeSink:
    def __init__(self, accepts=True):
        self.accepts = accepts
        self.commands = []

    def try_send(self, command):
        if not self.accepts:
            return False
        self.commands.append(command)
        return True

    def frames(self):
        return [json.loads(command.text) for command in self.commands if isinstance(command, ChatText)]


class TestRoomCoordinator:
    def setup_method(self):
        self.coordinator = RoomCoordinator()

    def test_count_of_unknown_room(self):
        assert self.coordinator.count(7) == 0

    def test_join_gives_unique_ids(self):
        ids = {self.coordinator.join(1, f"user{i}", FakeSink()) for i in range(20)}
        assert len(ids) == 20
        assert self.coordinator.count(1) == 20

    def test_join_with_taken_id_gets_a_new_one(self):
        first = self.coordinator.join(1, "ann", FakeSink(), connection_id=5)
        second = self.coordinator.join(1, "bob", FakeSink(), connection_id=5)
        assert first == 5
        assert second != 5
        assert self.coordinator.count(1) == 2

    def test_join_is_announced_to_the_others(self):
        ann = FakeSink()
        bob = FakeSink()
        self.coordinator.join(1, "ann", ann)
        self.coordinator.join(1, "bob", bob)

        assert ann.frames() == [{"join": 1, "member": "bob", "count": 2}]
        assert bob.frames() == []

    def test_leave_notifies_and_updates_count(self):
        sink = FakeSink()
        connection_id = self.coordinator.join(1, "ann", sink)
        self.coordinator.leave(1, connection_id, "ann")

        assert self.coordinator.count(1) == 0
        assert sink.frames() == [{"leave": 1, "member": "ann", "count": 0}]

    def test_leave_of_unknown_member_is_ignored(self):
        sink = FakeSink()
        self.coordinator.join(1, "ann", sink)
        self.coordinator.leave(1, 12345, "ghost")
        self.coordinator.leave(2, 12345, "ghost")

        assert self.coordinator.count(1) == 1
        assert sink.frames() == []

    def test_broadcast_reaches_every_member(self):
        sinks = [FakeSink() for _ in range(3)]
        for i, sink in enumerate(sinks):
            self.coordinator.join(4, f"user{i}", sink)
        for sink in sinks:
            sink.commands.clear()

        self.coordinator.broadcast(4, '{"msg": "hi"}')
        for sink in sinks:
            assert sink.frames() == [{"msg": "hi"}]
        assert self.coordinator.count(4) == 3

    def test_broadcast_drops_unreachable_members(self):
        alive = FakeSink()
        dead = FakeSink()
        self.coordinator.join(1, "alive", alive)
        self.coordinator.join(1, "dead", dead)
        dead.accepts = False

        self.coordinator.broadcast(1, '{"msg": "one"}')
        assert self.coordinator.count(1) == 1

        dead.accepts = True
        self.coordinator.broadcast(1, '{"msg": "two"}')
        assert {"msg": "two"} not in dead.frames()
        assert alive.frames()[-2:] == [{"msg": "one"}, {"msg": "two"}]

    def test_broadcast_to_unknown_room(self):
        self.coordinator.broadcast(99, '{"msg": "nobody"}')
        assert self.coordinator.count(99) == 0

    def test_broadcast_keeps_excluded_members(self):
        ann = FakeSink()
        ann_id = self.coordinator.join(1, "ann", ann)
        self.coordinator.broadcast(1, '{"msg": "hi"}', exclude=(ann_id,))

        assert ann.frames() == []
        assert self.coordinator.count(1) == 1

    def test_join_during_broadcast_misses_it(self):
        late = FakeSink()
        coordinator = self.coordinator

        class JoiningSink(FakeSink):
            def try_send(self, command):
                coordinator.join(1, "late", late)
                return super().try_send(command)

        self.coordinator.join(1, "ann", JoiningSink())
        self.coordinator.broadcast(1, '{"msg": "hi"}')

        assert {"msg": "hi"} not in late.frames()
        assert self.coordinator.count(1) == 2

    def test_notify_block(self):
        bob = FakeSink()
        self.coordinator.join(1, "ann", FakeSink(), user_id=1)
        self.coordinator.join(1, "bob", bob, user_id=2)

        assert self.coordinator.notify_block(1, 2, True) is True
        block_states = [command for command in bob.commands if isinstance(command, BlockState)]
        assert len(block_states) == 1
        assert block_states[0].is_block is True

    def test_notify_block_matches_the_account_not_the_name(self):
        impostor = FakeSink()
        self.coordinator.join(1, "bob", impostor)
        self.coordinator.join(1, "bob", FakeSink(), user_id=2)

        assert self.coordinator.notify_block(1, 2, False) is True
        assert not any(isinstance(command, BlockState) for command in impostor.commands)

    def test_notify_block_of_absent_member(self):
        self.coordinator.join(1, "ann", FakeSink(), user_id=1)
        assert self.coordinator.notify_block(1, 2, True) is False
        assert self.coordinator.notify_block(0, 1, True) is False
        assert self.coordinator.notify_block(1, None, True) is False

    def test_notify_block_of_unreachable_member(self):
        bob = FakeSink()
        self.coordinator.join(1, "bob", bob, user_id=2)
        bob.accepts = False
        assert self.coordinator.notify_block(1, 2, False) is False
