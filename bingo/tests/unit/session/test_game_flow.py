"""Tests for finalize, start, win claims and round lifecycle."""

import asyncio

import pytest

from bingo.logic.enums import DealMode, GameEndReason, GameState, RoundDecision, WinPattern
from bingo.logic.exceptions import AuthorizationDeniedError, InsufficientSongsError
from bingo.messaging.types import (
    ContinueOrEndMessage,
    ErrorCode,
    ForceRefreshMessage,
    MarkSquareMessage,
    RevealCallMessage,
    SeekSongMessage,
    ServerMessageType,
    SetDeviceMessage,
    SetPatternMessage,
    SetPreQueueMessage,
    SetSuperStrictMessage,
    SetVolumeMessage,
    StartGameMessage,
    VerifyBingoMessage,
)
from bingo.tests.helpers.songs import five_column_pools, make_pool
from bingo.tests.mocks import MockConnection
from bingo.tests.unit.session.helpers import create_room_with_players, finalize, join, player_of

CORNERS = ("0-0", "0-4", "4-0", "4-4")


async def _mark(manager, conn, positions) -> None:
    card = player_of(manager, conn).card
    for position in positions:
        await manager.mark_square(conn, MarkSquareMessage(position=position, song_id=card.get_square(position).song_id))


async def _call(manager, conn, positions) -> None:
    """Record the songs under positions as already played this round."""
    room = manager.get_room("room1")
    card = player_of(manager, conn).card
    for position in positions:
        room.mark_called(card.get_square(position).song_id)


async def _claim(manager, conn, positions=CORNERS) -> None:
    await _call(manager, conn, positions)
    await _mark(manager, conn, positions)
    await manager.player_bingo(conn)


class TestFinalizeMix:
    async def test_one_by_75_deals_everyone_but_displays(self, session_manager):
        host, players = await create_room_with_players(session_manager)
        display = await join(session_manager, "Display")

        await finalize(session_manager, host)

        room = session_manager.get_room("room1")
        assert room.mix_finalized
        assert room.dealt_pool.mode == DealMode.ONE_BY_75
        for conn in [host, *players]:
            assert len(conn.messages_of_type(ServerMessageType.BINGO_CARD)) == 1
        assert display.messages_of_type(ServerMessageType.BINGO_CARD) == []
        [pool] = display.messages_of_type(ServerMessageType.ONE_BY_75_POOL)
        assert len(pool["song_ids"]) == 75
        assert "song_name" not in pool
        [finalized] = players[0].messages_of_type(ServerMessageType.MIX_FINALIZED)
        assert finalized["pool_names"] == ["Hits"]
        assert finalized["mode"] == DealMode.ONE_BY_75
        assert finalized["total_songs"] == 75

    async def test_five_by_15_announces_columns(self, session_manager):
        host, players = await create_room_with_players(session_manager)

        await finalize(session_manager, host, five_column_pools())

        [pool] = players[0].messages_of_type(ServerMessageType.FIVE_BY_15_POOL)
        assert len(pool["columns"]) == 5
        assert pool["names"][0] == "Decade 0"
        [mapping] = players[0].messages_of_type(ServerMessageType.FIVE_BY_15_MAP)
        assert len(mapping["id_to_column"]) == 75

    async def test_insufficient_songs_leaves_room_untouched(self, session_manager):
        host, players = await create_room_with_players(session_manager)

        with pytest.raises(InsufficientSongsError):
            await finalize(session_manager, host, [make_pool(10)])

        room = session_manager.get_room("room1")
        assert not room.mix_finalized
        assert room.dealt_pool is None
        assert player_of(session_manager, players[0]).card is None
        assert players[0].messages_of_type(ServerMessageType.BINGO_CARD) == []

    async def test_repeat_finalize_reconfirms_to_sender_only(self, session_manager):
        host, players = await create_room_with_players(session_manager)
        await finalize(session_manager, host)
        card = player_of(session_manager, players[0]).card
        host.clear()
        players[0].clear()

        await finalize(session_manager, host, [make_pool(100, prefix="other")])

        assert [m["type"] for m in host.sent_messages] == [ServerMessageType.MIX_FINALIZED]
        assert players[0].sent_messages == []
        assert player_of(session_manager, players[0]).card is card

    async def test_non_host_cannot_finalize(self, session_manager):
        _, players = await create_room_with_players(session_manager)

        with pytest.raises(AuthorizationDeniedError):
            await finalize(session_manager, players[0])

    async def test_not_in_room(self, session_manager):
        conn = MockConnection()

        await finalize(session_manager, conn)

        assert conn.sent_messages[0]["code"] == ErrorCode.NOT_IN_ROOM


class TestStartGame:
    async def test_start_plays_first_song(self, session_manager, controller):
        host, players = await create_room_with_players(session_manager)
        await finalize(session_manager, host)

        await session_manager.start_game(host, StartGameMessage(snippet_length=20, pattern=WinPattern.X))

        room = session_manager.get_room("room1")
        assert room.state == GameState.PLAYING
        assert room.snippet_seconds == 20
        assert room.pattern == WinPattern.X
        [started] = players[0].messages_of_type(ServerMessageType.GAME_STARTED)
        assert started["total_songs"] == 75
        assert started["pattern"] == WinPattern.X
        [playing] = players[0].messages_of_type(ServerMessageType.SONG_PLAYING)
        assert playing["current_index"] == 0
        assert controller.calls_to("start")[0][1] == "device-1"

    async def test_start_deals_when_not_finalized(self, session_manager):
        host, players = await create_room_with_players(session_manager)

        await session_manager.start_game(host, StartGameMessage(pools=[make_pool(30)]))

        assert player_of(session_manager, players[0]).card is not None
        assert players[0].messages_of_type(ServerMessageType.MIX_FINALIZED)
        assert session_manager.get_room("room1").state == GameState.PLAYING

    async def test_start_without_songs(self, session_manager):
        host, _ = await create_room_with_players(session_manager)

        with pytest.raises(InsufficientSongsError) as exc_info:
            await session_manager.start_game(host, StartGameMessage())

        assert exc_info.value.available == 0
        assert session_manager.get_room("room1").state == GameState.WAITING

    async def test_start_without_device(self, manager_without_device, controller):
        host, players = await create_room_with_players(manager_without_device)
        await finalize(manager_without_device, host)

        await manager_without_device.start_game(host, StartGameMessage())

        assert manager_without_device.get_room("room1").state == GameState.WAITING
        [error] = players[0].messages_of_type(ServerMessageType.PLAYBACK_ERROR)
        assert error["message"] == "Locked device not available"
        assert controller.calls_to("start") == []

    async def test_device_override_on_start(self, manager_without_device, controller):
        host, _ = await create_room_with_players(manager_without_device)
        await finalize(manager_without_device, host)

        await manager_without_device.start_game(host, StartGameMessage(device_id="speaker-9"))

        assert controller.calls_to("start")[0][1] == "speaker-9"

    async def test_start_twice(self, session_manager):
        host, _ = await create_room_with_players(session_manager)
        await finalize(session_manager, host)
        await session_manager.start_game(host, StartGameMessage())
        host.clear()

        await session_manager.start_game(host, StartGameMessage())

        assert host.sent_messages[0]["code"] == ErrorCode.INVALID_STATE

    async def test_late_registered_player_gets_card_on_start(self, session_manager):
        host, _ = await create_room_with_players(session_manager)
        await finalize(session_manager, host)
        room = session_manager.get_room("room1")
        late = await join(session_manager, "Dave")
        player_of(session_manager, late).card = None
        room.client_cards.clear()

        await session_manager.start_game(host, StartGameMessage())

        assert player_of(session_manager, late).card is not None


class TestClaims:
    @pytest.fixture
    async def playing_room(self, session_manager):
        host, players = await create_room_with_players(session_manager)
        await session_manager.set_pattern(host, SetPatternMessage(pattern=WinPattern.FOUR_CORNERS))
        await finalize(session_manager, host)
        await session_manager.start_game(host, StartGameMessage())
        for conn in [host, *players]:
            conn.clear()
        return host, players

    async def test_four_corners_bingo_waits_for_host(self, session_manager, playing_room, controller):
        host, players = playing_room
        alice = players[0]

        await _call(session_manager, alice, CORNERS)
        await _mark(session_manager, alice, CORNERS)
        await session_manager.player_bingo(alice)

        room = session_manager.get_room("room1")
        assert room.state == GameState.VERIFYING
        assert controller.calls_to("pause")
        assert not session_manager.scheduler.handle_for("room1").has_advance
        assert len(alice.messages_of_type(ServerMessageType.PATTERN_COMPLETE)) == 1
        [result] = alice.messages_of_type(ServerMessageType.BINGO_RESULT)
        assert result["success"] is True
        assert result["awaiting_verification"] is True
        [needed] = host.messages_of_type(ServerMessageType.BINGO_VERIFICATION_NEEDED)
        assert needed["player_name"] == "Alice"
        assert needed["player_id"] == alice.connection_id
        assert needed["pattern"] == WinPattern.FOUR_CORNERS
        assert [s["song_id"] for s in needed["played_songs"]] == needed["called_song_ids"]
        assert players[1].messages_of_type(ServerMessageType.BINGO_VERIFICATION_NEEDED) == []
        [pending] = players[1].messages_of_type(ServerMessageType.BINGO_VERIFICATION_PENDING)
        assert pending["player_name"] == "Alice"
        assert host.messages_of_type(ServerMessageType.BINGO_CALLED) == []
        [winner] = room.winners
        assert winner.client_id == "alice-client"
        assert not winner.verified

    async def test_marked_but_unplayed_songs_do_not_win(self, session_manager, playing_room):
        _, players = playing_room
        alice = players[0]
        room = session_manager.get_room("room1")
        await _mark(session_manager, alice, CORNERS)
        corner_songs = {player_of(session_manager, alice).card.get_square(p).song_id for p in CORNERS}
        assert not corner_songs <= set(room.called_song_ids)

        await session_manager.player_bingo(alice)

        [result] = alice.messages_of_type(ServerMessageType.BINGO_RESULT)
        assert result["success"] is False
        assert result["reason"] == "Pattern not complete"
        assert room.winners == []
        assert room.state == GameState.PLAYING

    async def test_pattern_complete_is_private(self, session_manager, playing_room):
        _, players = playing_room
        await _call(session_manager, players[0], CORNERS)

        await _mark(session_manager, players[0], CORNERS)

        assert len(players[0].messages_of_type(ServerMessageType.PATTERN_COMPLETE)) == 1
        assert players[1].messages_of_type(ServerMessageType.PATTERN_COMPLETE) == []

    async def test_incomplete_claim_rejected(self, session_manager, playing_room):
        _, players = playing_room
        await _call(session_manager, players[0], CORNERS)
        await _mark(session_manager, players[0], CORNERS[:3])

        await session_manager.player_bingo(players[0])

        [result] = players[0].messages_of_type(ServerMessageType.BINGO_RESULT)
        assert result == {
            "type": "bingo_result",
            "success": False,
            "reason": "Pattern not complete",
            "awaiting_verification": False,
            "verified": False,
            "rejected": False,
        }
        assert session_manager.get_room("room1").winners == []

    async def test_second_claim_rejected(self, session_manager, playing_room):
        _, players = playing_room
        await _claim(session_manager, players[0])

        await session_manager.player_bingo(players[0])

        results = players[0].messages_of_type(ServerMessageType.BINGO_RESULT)
        assert results[1]["reason"] == "You have already called bingo"
        assert len(session_manager.get_room("room1").winners) == 1

    async def test_multiple_winners_in_order(self, session_manager, playing_room):
        _, (alice, bob) = playing_room
        await _call(session_manager, bob, CORNERS)
        await _call(session_manager, alice, CORNERS)
        await _mark(session_manager, bob, CORNERS)
        await _mark(session_manager, alice, CORNERS)

        await session_manager.player_bingo(bob)
        await session_manager.player_bingo(alice)

        room = session_manager.get_room("room1")
        assert [w.player_name for w in room.winners] == ["Bob", "Alice"]
        assert room.state == GameState.VERIFYING

    async def test_claim_after_round_ended(self, session_manager, playing_room):
        host, players = playing_room
        await session_manager.end_game(host)
        await _call(session_manager, players[0], CORNERS)
        await _mark(session_manager, players[0], CORNERS)

        await session_manager.player_bingo(players[0])

        [result] = players[0].messages_of_type(ServerMessageType.BINGO_RESULT)
        assert result["reason"] == "No round in progress"
        assert session_manager.get_room("room1").winners == []

    async def test_claim_without_card(self, session_manager, playing_room):
        display = await join(session_manager, "Display")

        await session_manager.player_bingo(display)

        [result] = display.messages_of_type(ServerMessageType.BINGO_RESULT)
        assert result["reason"] == "No bingo card assigned"

    async def test_mark_without_card(self, session_manager, playing_room):
        display = await join(session_manager, "Display")

        await session_manager.mark_square(display, MarkSquareMessage(position="0-0", song_id="s1"))

        assert display.messages_of_type(ServerMessageType.ERROR)[0]["code"] == ErrorCode.NO_CARD

    async def test_stale_mark_ignored(self, session_manager, playing_room):
        _, players = playing_room
        card = player_of(session_manager, players[0]).card

        await session_manager.mark_square(players[0], MarkSquareMessage(position="0-0", song_id="not-on-card"))

        assert card.marked_positions() == set()
        assert players[0].sent_messages == []

    async def test_unmarking_then_remarking_notifies_again(self, session_manager, playing_room):
        _, players = playing_room
        alice = players[0]
        card = player_of(session_manager, alice).card
        await _call(session_manager, alice, CORNERS)
        await _mark(session_manager, alice, CORNERS)
        await _mark(session_manager, alice, CORNERS[:1])

        assert not player_of(session_manager, alice).pattern_complete
        await _mark(session_manager, alice, CORNERS[:1])

        assert len(alice.messages_of_type(ServerMessageType.PATTERN_COMPLETE)) == 2
        assert card.marked_positions() == set(CORNERS)

    async def test_super_strict_refuses_marking_unplayed_songs(self, session_manager, playing_room):
        host, players = playing_room
        alice = players[0]
        card = player_of(session_manager, alice).card
        await session_manager.set_super_strict(host, SetSuperStrictMessage(enabled=True))
        room = session_manager.get_room("room1")
        room.called_song_ids[:] = []

        await _mark(session_manager, alice, CORNERS[:1])

        [error] = alice.messages_of_type(ServerMessageType.ERROR)
        assert error["code"] == ErrorCode.INVALID_STATE
        assert card.marked_positions() == set()

        await _call(session_manager, alice, CORNERS)
        await _mark(session_manager, alice, CORNERS)
        await session_manager.player_bingo(alice)

        assert card.marked_positions() == set(CORNERS)
        assert alice.messages_of_type(ServerMessageType.BINGO_RESULT)[0]["success"] is True

    async def test_super_strict_still_allows_unmarking(self, session_manager, playing_room):
        host, players = playing_room
        alice = players[0]
        card = player_of(session_manager, alice).card
        await _mark(session_manager, alice, CORNERS[:1])
        await session_manager.set_super_strict(host, SetSuperStrictMessage(enabled=True))
        session_manager.get_room("room1").called_song_ids[:] = []

        await _mark(session_manager, alice, CORNERS[:1])

        assert card.marked_positions() == set()
        assert alice.messages_of_type(ServerMessageType.ERROR) == []

    async def test_custom_pattern(self, session_manager, playing_room):
        host, players = playing_room
        alice = players[0]
        await session_manager.set_pattern(
            host,
            SetPatternMessage(pattern=WinPattern.CUSTOM, custom_mask=["1-1", "3-3", "9-9"]),
        )
        room = session_manager.get_room("room1")
        assert room.custom_mask == frozenset({"1-1", "3-3"})

        await _claim(session_manager, alice, ["1-1", "3-3"])

        assert alice.messages_of_type(ServerMessageType.BINGO_RESULT)[0]["success"] is True


class TestVerification:
    @pytest.fixture
    async def claimed(self, session_manager):
        host, players = await create_room_with_players(session_manager)
        await session_manager.set_pattern(host, SetPatternMessage(pattern=WinPattern.FOUR_CORNERS))
        await finalize(session_manager, host)
        await session_manager.start_game(host, StartGameMessage())
        await _claim(session_manager, players[0])
        for conn in [host, *players]:
            conn.clear()
        return host, players

    async def test_approve_completes_round(self, session_manager, claimed):
        host, (alice, bob) = claimed

        await session_manager.verify_bingo(host, VerifyBingoMessage(player_id=alice.connection_id, approved=True))

        room = session_manager.get_room("room1")
        assert room.state == GameState.ROUND_COMPLETE
        assert room.winners[0].verified
        assert [(w.round_number, w.player_name) for w in room.round_winners] == [(1, "Alice")]
        [result] = alice.messages_of_type(ServerMessageType.BINGO_RESULT)
        assert result["verified"] is True
        assert bob.messages_of_type(ServerMessageType.BINGO_CONFIRMED)[0]["player_name"] == "Alice"
        [called] = bob.messages_of_type(ServerMessageType.BINGO_CALLED)
        assert called["winner"]["player_name"] == "Alice"
        [verified] = host.messages_of_type(ServerMessageType.BINGO_VERIFIED)
        assert verified["approved"] is True
        assert verified["round_number"] == 1
        [complete] = bob.messages_of_type(ServerMessageType.ROUND_COMPLETE)
        assert complete["winner"] == "Alice"
        assert complete["round_winners"][0]["player_name"] == "Alice"
        assert not session_manager.scheduler.handle_for("room1").has_advance

    async def test_reject_resumes_playback(self, session_manager, claimed, controller):
        host, (alice, _) = claimed
        controller.calls.clear()

        await session_manager.verify_bingo(
            host, VerifyBingoMessage(player_id=alice.connection_id, approved=False, reason="Wrong square")
        )

        room = session_manager.get_room("room1")
        player = player_of(session_manager, alice)
        assert room.state == GameState.PLAYING
        assert room.winners == []
        assert not player.has_won
        assert not player.pattern_complete
        [result] = alice.messages_of_type(ServerMessageType.BINGO_RESULT)
        assert result["success"] is False
        assert result["rejected"] is True
        assert result["reason"] == "Bingo rejected: Wrong square"
        [verified] = host.messages_of_type(ServerMessageType.BINGO_VERIFIED)
        assert verified["approved"] is False
        assert controller.calls_to("resume")
        assert host.messages_of_type(ServerMessageType.PLAYBACK_RESUMED)
        assert session_manager.scheduler.handle_for("room1").has_advance

    async def test_reject_keeps_hold_while_claims_pending(self, session_manager, claimed):
        host, (alice, bob) = claimed
        await _claim(session_manager, bob)

        await session_manager.verify_bingo(host, VerifyBingoMessage(player_id=alice.connection_id, approved=False))

        room = session_manager.get_room("room1")
        assert room.state == GameState.VERIFYING
        assert [w.player_name for w in room.winners] == ["Bob"]
        assert alice.messages_of_type(ServerMessageType.BINGO_RESULT)[0]["reason"] == "Bingo rejected: Invalid pattern"

    async def test_rejected_player_may_claim_again(self, session_manager, claimed):
        host, (alice, _) = claimed
        await session_manager.verify_bingo(host, VerifyBingoMessage(player_id=alice.connection_id, approved=False))
        alice.clear()

        await session_manager.player_bingo(alice)

        assert alice.messages_of_type(ServerMessageType.BINGO_RESULT)[0]["awaiting_verification"] is True

    async def test_unknown_claim(self, session_manager, claimed):
        host, (_, bob) = claimed

        await session_manager.verify_bingo(host, VerifyBingoMessage(player_id=bob.connection_id, approved=True))

        assert host.messages_of_type(ServerMessageType.ERROR)[0]["code"] == ErrorCode.INVALID_STATE
        assert session_manager.get_room("room1").round_winners == []

    async def test_non_host_cannot_verify(self, session_manager, claimed):
        _, (alice, bob) = claimed

        with pytest.raises(AuthorizationDeniedError):
            await session_manager.verify_bingo(bob, VerifyBingoMessage(player_id=alice.connection_id, approved=True))
        assert session_manager.get_room("room1").state == GameState.VERIFYING

    async def test_continue_after_win(self, session_manager, claimed, controller):
        host, (alice, bob) = claimed
        await session_manager.verify_bingo(host, VerifyBingoMessage(player_id=alice.connection_id, approved=True))

        await session_manager.continue_or_end(host, ContinueOrEndMessage(action=RoundDecision.CONTINUE))

        room = session_manager.get_room("room1")
        assert room.state == GameState.PLAYING
        assert bob.messages_of_type(ServerMessageType.PLAYBACK_RESUMED)
        assert controller.calls_to("resume")
        assert [w.player_name for w in room.round_winners] == ["Alice"]

    async def test_end_after_win(self, session_manager, claimed):
        host, (alice, bob) = claimed
        await session_manager.verify_bingo(host, VerifyBingoMessage(player_id=alice.connection_id, approved=True))

        await session_manager.continue_or_end(host, ContinueOrEndMessage(action=RoundDecision.END))

        assert session_manager.get_room("room1").state == GameState.ENDED
        [ended] = bob.messages_of_type(ServerMessageType.GAME_ENDED)
        assert ended["reason"] == GameEndReason.HOST_ENDED
        assert ended["winners"][0]["player_name"] == "Alice"

    async def test_continue_needs_a_finished_round(self, session_manager):
        host, _ = await create_room_with_players(session_manager)
        await finalize(session_manager, host)
        await session_manager.start_game(host, StartGameMessage())
        host.clear()

        await session_manager.continue_or_end(host, ContinueOrEndMessage(action=RoundDecision.CONTINUE))

        assert host.messages_of_type(ServerMessageType.ERROR)[0]["code"] == ErrorCode.INVALID_STATE
        assert session_manager.get_room("room1").state == GameState.PLAYING

    async def test_end_needs_a_round_in_progress(self, session_manager):
        host, _ = await create_room_with_players(session_manager)

        await session_manager.continue_or_end(host, ContinueOrEndMessage(action=RoundDecision.END))

        assert host.messages_of_type(ServerMessageType.ERROR)[0]["code"] == ErrorCode.INVALID_STATE
        assert session_manager.get_room("room1").state == GameState.WAITING

    async def test_approval_after_end_keeps_round_ended(self, session_manager, claimed):
        host, (alice, _) = claimed
        await session_manager.end_game(host)

        await session_manager.verify_bingo(host, VerifyBingoMessage(player_id=alice.connection_id, approved=True))

        assert session_manager.get_room("room1").state == GameState.ENDED

    async def test_transport_frozen_during_verification(self, session_manager, claimed, controller):
        host, _ = claimed
        controller.calls.clear()

        await session_manager.skip_song(host)
        await session_manager.resume_song(host)

        assert session_manager.get_room("room1").state == GameState.VERIFYING
        assert controller.calls_to("start") == []
        assert controller.calls_to("resume") == []

    async def test_request_player_cards(self, session_manager, claimed):
        host, (alice, bob) = claimed
        display = await join(session_manager, "Display")

        await session_manager.request_player_cards(host)

        [cards] = host.messages_of_type(ServerMessageType.PLAYER_CARDS)
        assert [c["player_name"] for c in cards["cards"]] == ["Alice", "Bob"]
        assert cards["cards"][0]["player_id"] == alice.connection_id
        assert cards["called_song_ids"] == session_manager.get_room("room1").called_song_ids
        assert display.messages_of_type(ServerMessageType.PLAYER_CARDS) == []
        with pytest.raises(AuthorizationDeniedError):
            await session_manager.request_player_cards(bob)

    async def test_sync_state_carries_round_history(self, session_manager, claimed):
        host, (alice, bob) = claimed
        await session_manager.verify_bingo(host, VerifyBingoMessage(player_id=alice.connection_id, approved=True))
        bob.clear()

        await session_manager.sync_state(bob)

        [state] = bob.messages_of_type(ServerMessageType.ROOM_STATE)
        room = session_manager.get_room("room1")
        assert state["game_state"] == GameState.ROUND_COMPLETE
        assert [w["player_name"] for w in state["round_winners"]] == ["Alice"]
        assert [s["song_id"] for s in state["played_songs"]] == room.called_song_ids

    async def test_round_winners_survive_new_round_until_reset(self, session_manager, claimed):
        host, (alice, _) = claimed
        await session_manager.verify_bingo(host, VerifyBingoMessage(player_id=alice.connection_id, approved=True))
        room = session_manager.get_room("room1")

        await session_manager.new_round(host)
        assert [w.player_name for w in room.round_winners] == ["Alice"]
        assert room.winners == []

        await session_manager.reset_game(host)
        assert room.round_winners == []


class TestRoundLifecycle:
    @pytest.fixture
    async def started(self, session_manager):
        host, players = await create_room_with_players(session_manager)
        await finalize(session_manager, host)
        await session_manager.start_game(host, StartGameMessage())
        for conn in [host, *players]:
            conn.clear()
        return host, players

    async def test_end_game(self, session_manager, started, controller):
        host, players = started

        await session_manager.end_game(host)

        assert session_manager.get_room("room1").state == GameState.ENDED
        [ended] = players[0].messages_of_type(ServerMessageType.GAME_ENDED)
        assert ended["reason"] == GameEndReason.HOST_ENDED
        assert controller.calls_to("pause")

    async def test_new_round_redeals(self, session_manager, started):
        host, players = started
        room = session_manager.get_room("room1")
        await session_manager.set_pattern(host, SetPatternMessage(pattern=WinPattern.FOUR_CORNERS))
        await _claim(session_manager, players[0])
        alice = player_of(session_manager, players[0])
        assert alice.has_won
        assert alice.pattern_complete
        old_card = alice.card
        players[0].clear()

        await session_manager.new_round(host)

        assert room.round == 1
        assert room.state == GameState.WAITING
        assert room.winners == []
        assert room.called_song_ids == []
        assert room.mix_finalized
        assert not alice.has_won
        assert not alice.pattern_complete
        assert players[0].messages_of_type(ServerMessageType.ROUND_RESET)[0]["round"] == 1
        [dealt] = players[0].messages_of_type(ServerMessageType.BINGO_CARD)
        new_card = alice.card
        assert new_card is not old_card
        assert new_card.marked_positions() == set()
        assert set(new_card.song_ids) <= set(room.dealt_pool.song_ids)
        assert dealt["card"]["owner_id"] == "alice-client"
        assert not session_manager.scheduler.handle_for("room1").has_advance

    async def test_second_new_round(self, session_manager, started):
        host, players = started
        room = session_manager.get_room("room1")
        await session_manager.new_round(host)
        await session_manager.start_game(host, StartGameMessage())
        await session_manager.set_pattern(host, SetPatternMessage(pattern=WinPattern.FOUR_CORNERS))
        await _claim(session_manager, players[1])
        players[1].clear()

        await session_manager.new_round(host)

        bob = player_of(session_manager, players[1])
        assert room.round == 2
        assert room.state == GameState.WAITING
        assert room.winners == []
        assert not bob.has_won
        assert not bob.pattern_complete
        assert players[1].messages_of_type(ServerMessageType.ROUND_RESET)[0]["round"] == 2
        assert len(players[1].messages_of_type(ServerMessageType.BINGO_CARD)) == 1

    async def test_start_after_end_requires_new_round(self, session_manager, started):
        host, players = started
        await session_manager.set_pattern(host, SetPatternMessage(pattern=WinPattern.FOUR_CORNERS))
        await _claim(session_manager, players[0])
        await session_manager.end_game(host)
        room = session_manager.get_room("room1")
        host.clear()

        await session_manager.start_game(host, StartGameMessage())

        [error] = host.messages_of_type(ServerMessageType.ERROR)
        assert error["code"] == ErrorCode.INVALID_STATE
        assert room.state == GameState.ENDED
        assert [w.player_name for w in room.winners] == ["Alice"]
        assert player_of(session_manager, players[0]).has_won
        assert host.messages_of_type(ServerMessageType.GAME_STARTED) == []

    async def test_reconnect_after_new_round_gets_new_card(self, session_manager, started):
        host, players = started
        await session_manager.new_round(host)
        card = player_of(session_manager, players[0]).card
        await session_manager.leave_room(players[0])

        back = await join(session_manager, "Alice", client_id="alice-client")

        assert player_of(session_manager, back).card is card

    async def test_reset_game(self, session_manager, started):
        host, players = started
        room = session_manager.get_room("room1")
        room.round = 3

        await session_manager.reset_game(host)

        assert room.round == 0
        assert room.state == GameState.WAITING
        assert not room.mix_finalized
        assert room.dealt_pool is None
        assert room.sequence == []
        assert player_of(session_manager, players[0]).card is None
        assert players[0].messages_of_type(ServerMessageType.GAME_RESET)

    async def test_can_start_again_after_reset(self, session_manager, started):
        host, players = started
        await session_manager.reset_game(host)

        await session_manager.start_game(host, StartGameMessage(pools=[make_pool(80)]))

        assert session_manager.get_room("room1").state == GameState.PLAYING
        assert player_of(session_manager, players[0]).card is not None


class TestHostSettings:
    async def test_set_device_persists(self, session_manager, device_store):
        host, players = await create_room_with_players(session_manager)

        await session_manager.set_device(host, SetDeviceMessage(device_id="kitchen", device_name="Kitchen"))

        assert session_manager.get_room("room1").locked_device_id == "kitchen"
        assert device_store.load().id == "kitchen"
        assert players[0].messages_of_type(ServerMessageType.DEVICE_SELECTED)[0]["device_name"] == "Kitchen"

    async def test_prequeue_settings(self, session_manager):
        host, players = await create_room_with_players(session_manager)

        await session_manager.set_prequeue(host, SetPreQueueMessage(enabled=True, window=5))

        room = session_manager.get_room("room1")
        assert room.prequeue.enabled
        assert room.prequeue.window == 5
        assert players[0].messages_of_type(ServerMessageType.PREQUEUE_UPDATED)[0]["window"] == 5

    async def test_pattern_broadcast(self, session_manager):
        host, players = await create_room_with_players(session_manager)

        await session_manager.set_pattern(host, SetPatternMessage(pattern=WinPattern.PLUS, custom_mask=["0-0"]))

        [updated] = players[1].messages_of_type(ServerMessageType.PATTERN_UPDATED)
        assert updated == {"type": "pattern_updated", "pattern": "plus", "custom_mask": []}

    async def test_non_host_settings_rejected(self, session_manager):
        _, players = await create_room_with_players(session_manager)

        with pytest.raises(AuthorizationDeniedError):
            await session_manager.set_super_strict(players[0], SetSuperStrictMessage(enabled=True))
        assert not session_manager.get_room("room1").super_strict


class TestPlaylistControls:
    async def test_shuffle_requires_playlist(self, session_manager):
        host, _ = await create_room_with_players(session_manager)

        await session_manager.shuffle_playlist(host)

        assert host.sent_messages[0]["code"] == ErrorCode.INVALID_STATE

    async def test_shuffle(self, session_manager):
        host, players = await create_room_with_players(session_manager)
        await finalize(session_manager, host)
        room = session_manager.get_room("room1")
        before = sorted(s.id for s in room.sequence)

        await session_manager.shuffle_playlist(host)

        assert sorted(s.id for s in room.sequence) == before
        assert room.current_index == 0
        assert players[0].messages_of_type(ServerMessageType.PLAYLIST_SHUFFLED)[0]["total_songs"] == 75

    async def test_shuffle_waits_for_a_running_advance(self, session_manager):
        host, _ = await create_room_with_players(session_manager)
        await finalize(session_manager, host)
        room = session_manager.get_room("room1")
        room.current_index = 5
        original = list(room.sequence)

        async with session_manager.scheduler._lock("room1"):
            task = asyncio.create_task(session_manager.shuffle_playlist(host))
            for _ in range(5):
                await asyncio.sleep(0)
            assert not task.done()
            assert room.sequence == original
            assert room.current_index == 5
        await task

        assert room.current_index == 0
        assert sorted(s.id for s in room.sequence) == sorted(s.id for s in original)

    async def test_toggle_repeat(self, session_manager):
        host, _ = await create_room_with_players(session_manager)

        await session_manager.toggle_repeat(host)
        await session_manager.toggle_repeat(host)

        assert [m["repeat"] for m in host.messages_of_type(ServerMessageType.REPEAT_TOGGLED)] == [True, False]

    async def test_reveal_requires_song(self, session_manager):
        host, _ = await create_room_with_players(session_manager)

        await session_manager.reveal_call(host, RevealCallMessage())

        assert host.sent_messages[0]["code"] == ErrorCode.INVALID_STATE

    @pytest.mark.parametrize(
        ("hint", "has_title", "has_artist"),
        [("title", True, False), ("artist", False, True), ("full", True, True)],
    )
    async def test_reveal_hints(self, session_manager, hint, has_title, has_artist):
        host, players = await create_room_with_players(session_manager)
        await finalize(session_manager, host)
        await session_manager.start_game(host, StartGameMessage())

        await session_manager.reveal_call(host, RevealCallMessage(hint=hint))

        [revealed] = players[0].messages_of_type(ServerMessageType.CALL_REVEALED)
        assert (revealed["song_name"] is not None) == has_title
        assert (revealed["artist_name"] is not None) == has_artist
        assert revealed["song_id"] == session_manager.get_room("room1").current_song.id

    async def test_force_refresh(self, session_manager):
        host, players = await create_room_with_players(session_manager)

        await session_manager.force_refresh(host, ForceRefreshMessage(reason="new build"))

        [refresh] = players[0].messages_of_type(ServerMessageType.FORCE_REFRESH)
        assert refresh["reason"] == "new build"
        assert refresh["ts"] > 0

    async def test_transport_controls_delegate(self, session_manager, controller):
        host, _ = await create_room_with_players(session_manager)
        await finalize(session_manager, host)
        await session_manager.start_game(host, StartGameMessage())

        await session_manager.skip_song(host)
        await session_manager.pause_song(host)
        await session_manager.resume_song(host)
        await session_manager.set_volume(host, SetVolumeMessage(volume=40))
        await session_manager.seek_song(host, SeekSongMessage(position_ms=1000))
        await session_manager.previous_song(host)

        room = session_manager.get_room("room1")
        assert room.state == GameState.PLAYING
        assert room.volume == 40
        assert room.current_index == 0
        assert controller.calls_to("pause")
        assert controller.calls_to("seek")
