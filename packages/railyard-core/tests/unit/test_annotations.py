"""Unit tests for the annotation command protocol."""

from __future__ import annotations

import json
from typing import TYPE_CHECKING

import pytest

from railyard_core.annotations import (
    ANNOTATION_KEY_ABORT,
    ANNOTATION_KEY_REFRESH,
    ANNOTATION_KEY_REVERIFY,
    abort_request,
    format_controller_actor,
    refresh_token,
    request_abort,
    request_refresh,
    request_reverify,
    reverify_request,
)
from railyard_core.errors import NotFoundError, RailyardError
from railyard_core.schemas import (
    FreightHistory,
    ObjectMeta,
    VerificationInfo,
    VerificationPhase,
)

if TYPE_CHECKING:
    from collections.abc import Callable

    from railyard_core.schemas import FreightCollection, Stage
    from railyard_core.store.memory import InMemoryResourceStore


class TestParsing:
    """Tests for reading command annotations."""

    @pytest.mark.requirement("RY-002")
    def test_refresh_token(self) -> None:
        """The refresh token is returned stripped."""
        meta = ObjectMeta(annotations={ANNOTATION_KEY_REFRESH: " abc "})
        assert refresh_token(meta) == "abc"

    @pytest.mark.requirement("RY-002")
    def test_empty_refresh_token_is_absent(self) -> None:
        """A blank refresh annotation means no refresh."""
        assert refresh_token(ObjectMeta(annotations={ANNOTATION_KEY_REFRESH: "  "})) is None
        assert refresh_token(ObjectMeta()) is None

    @pytest.mark.requirement("RY-002")
    def test_reverify_request_parsed(self) -> None:
        """A well-formed reverify annotation is decoded."""
        meta = ObjectMeta(
            annotations={
                ANNOTATION_KEY_REVERIFY: '{"id":"vi-1","actor":"admin","controlPlane":true}'
            }
        )

        request = reverify_request(meta)

        assert request is not None
        assert request.id == "vi-1"
        assert request.actor == "admin"
        assert request.control_plane is True

    @pytest.mark.requirement("RY-002")
    @pytest.mark.parametrize("raw", ["not-json", "{}", '{"actor":"admin"}', ""])
    def test_malformed_abort_request_is_absent(self, raw: str) -> None:
        """Malformed or id-less abort annotations are ignored."""
        assert abort_request(ObjectMeta(annotations={ANNOTATION_KEY_ABORT: raw})) is None

    @pytest.mark.requirement("RY-002")
    def test_controller_actor(self) -> None:
        """Controller actors carry a controller: prefix."""
        assert format_controller_actor("stage-controller") == "controller:stage-controller"


class TestCommandWriters:
    """Tests for writing command annotations to a Stage."""

    @pytest.fixture
    def stored_stage(
        self,
        store: InMemoryResourceStore,
        make_stage: Callable[..., Stage],
        make_collection: Callable[..., FreightCollection],
    ) -> Callable[..., Stage]:
        """Factory storing a Stage whose current collection has the given history.

        Returns:
            Function creating the Stage in the store.
        """

        def _create(*history: VerificationInfo, with_freight: bool = True) -> Stage:
            stage = make_stage()
            if with_freight:
                stage.status.freight_history = FreightHistory()
                stage.status.freight_history.record(make_collection("f1", history=history))
            created = store.create_stage(stage)
            created.status = stage.status
            return store.update_stage_status(created)

        return _create

    @pytest.mark.requirement("RY-002")
    def test_request_refresh_writes_token(self, store: InMemoryResourceStore, stored_stage) -> None:
        """request_refresh writes the given token."""
        stored_stage()

        token = request_refresh(store, "demo", "test", "tok-1")

        assert token == "tok-1"
        assert store.get_stage("demo", "test").metadata.annotations[ANNOTATION_KEY_REFRESH] == (
            "tok-1"
        )

    @pytest.mark.requirement("RY-002")
    def test_request_refresh_generates_token(
        self, store: InMemoryResourceStore, stored_stage
    ) -> None:
        """request_refresh generates a token when none is given."""
        stored_stage()
        assert request_refresh(store, "demo", "test")

    @pytest.mark.requirement("RY-002")
    def test_request_reverify_targets_current_attempt(
        self, store: InMemoryResourceStore, stored_stage
    ) -> None:
        """The reverify command names the newest verification attempt."""
        stored_stage(
            VerificationInfo(id="vi-2", phase=VerificationPhase.FAILED),
            VerificationInfo(id="vi-1", phase=VerificationPhase.SUCCESSFUL),
        )

        request = request_reverify(store, "demo", "test", actor="admin")

        raw = store.get_stage("demo", "test").metadata.annotations[ANNOTATION_KEY_REVERIFY]
        assert request.id == "vi-2"
        assert json.loads(raw) == {"id": "vi-2", "actor": "admin"}

    @pytest.mark.requirement("RY-002")
    def test_request_abort_round_trips_through_parser(
        self, store: InMemoryResourceStore, stored_stage
    ) -> None:
        """The written abort command is read back by abort_request."""
        stored_stage(VerificationInfo(id="vi-1", phase=VerificationPhase.RUNNING))

        request = request_abort(store, "demo", "test", actor="admin", control_plane=True)

        parsed = abort_request(store.get_stage("demo", "test").metadata)
        assert request.equals(parsed)

    @pytest.mark.requirement("RY-002")
    def test_no_current_freight(self, store: InMemoryResourceStore, stored_stage) -> None:
        """A Stage without Freight cannot be reverified."""
        stored_stage(with_freight=False)

        with pytest.raises(RailyardError, match="stage has no current freight"):
            request_reverify(store, "demo", "test")

    @pytest.mark.requirement("RY-002")
    def test_no_verification_info(self, store: InMemoryResourceStore, stored_stage) -> None:
        """A collection without attempts cannot be aborted."""
        stored_stage()

        with pytest.raises(RailyardError, match="stage has no current verification info"):
            request_abort(store, "demo", "test")

    @pytest.mark.requirement("RY-002")
    def test_verification_info_without_id(
        self, store: InMemoryResourceStore, stored_stage
    ) -> None:
        """An attempt without an id cannot be targeted."""
        stored_stage(VerificationInfo(phase=VerificationPhase.RUNNING))

        with pytest.raises(RailyardError, match="stage verification info has no ID"):
            request_abort(store, "demo", "test")

    @pytest.mark.requirement("RY-002")
    def test_missing_stage(self, store: InMemoryResourceStore) -> None:
        """Commands against a missing Stage raise NotFoundError."""
        with pytest.raises(NotFoundError):
            request_reverify(store, "demo", "absent")
