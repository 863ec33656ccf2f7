import uuid
from datetime import timedelta

import pytest
from sqlalchemy import select

from app.application.services import schedule_service
from app.application.services.post_service import (
    add_variant,
    create_post,
    delete_post,
    deselect_variant,
    get_best_variant,
    get_selected_variant,
    select_variant,
    update_post,
)
from app.application.services.schedule_service import (
    cancel_schedule,
    claim_schedule,
    create_schedule,
    due_for_retry,
    due_now,
    get_calendar_schedules,
    get_schedule_stats,
    list_schedules,
    recover_stale_processing,
    transition_status,
    update_schedule,
)
from app.application.services.social_account_service import deactivate_account
from app.domain.errors import InvalidStateError, NotFoundError, ValidationError
from app.domain.models.post import PostStatus
from app.domain.models.schedule import Schedule, ScheduleStatus


def _schedule(db_session, *, user_id, post, account, now, minutes=1, **kwargs):
    schedule = create_schedule(
        db_session,
        user_id=user_id,
        post_id=post.id,
        platform=account.platform,
        social_account_id=account.id,
        scheduled_for=now + timedelta(minutes=minutes),
        now=now,
        **kwargs,
    )
    db_session.commit()
    return schedule


def test_create_schedule_marks_post_scheduled(db_session, user_id, post, twitter_account, now):
    schedule = _schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now, minutes=30)

    assert schedule.status == ScheduleStatus.PENDING.value
    assert schedule.retry_count == 0
    assert schedule.max_retries == 3
    assert schedule.next_retry_at is None
    assert post.status == PostStatus.SCHEDULED.value
    assert post.scheduled_for == now + timedelta(minutes=30)


def test_create_schedule_rejects_past_time(db_session, user_id, post, twitter_account, now):
    with pytest.raises(ValidationError):
        _schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now, minutes=0)


def test_create_schedule_rejects_platform_mismatch(db_session, user_id, post, twitter_account, now):
    with pytest.raises(ValidationError, match="Platform mismatch"):
        create_schedule(
            db_session,
            user_id=user_id,
            post_id=post.id,
            platform="threads",
            social_account_id=twitter_account.id,
            scheduled_for=now + timedelta(hours=1),
            now=now,
        )


def test_create_schedule_hides_other_users_post(db_session, post, twitter_account, now):
    with pytest.raises(ValidationError):
        create_schedule(
            db_session,
            user_id=uuid.uuid4(),
            post_id=post.id,
            platform="twitter",
            social_account_id=twitter_account.id,
            scheduled_for=now + timedelta(hours=1),
            now=now,
        )


def test_create_schedule_rejects_inactive_account(db_session, user_id, post, twitter_account, now):
    deactivate_account(db_session, account=twitter_account, reason="test")
    db_session.commit()
    with pytest.raises(ValidationError):
        _schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now)


def test_create_schedule_rejects_variant_of_another_post(db_session, user_id, post, twitter_account, now):
    other_post = create_post(db_session, user_id=user_id, content="Another post")
    variant = add_variant(db_session, user_id=user_id, post_id=other_post.id, content="Variant", score=80)
    db_session.commit()
    with pytest.raises(ValidationError):
        _schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now, variant_id=variant.id)


def test_duplicate_live_schedule_rejected_until_cancelled(db_session, user_id, post, twitter_account, now):
    first = _schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now)
    with pytest.raises(ValidationError):
        _schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now, minutes=5)

    cancel_schedule(db_session, user_id=user_id, schedule_id=first.id)
    db_session.commit()
    second = _schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now, minutes=5)
    assert second.id != first.id


def test_concurrent_duplicate_create_is_rejected_by_unique_index(
    db_session, user_id, post, twitter_account, now, monkeypatch
):
    first = _schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now)
    # Both creates pass the pre-check when they race; the index must settle it.
    monkeypatch.setattr(schedule_service, "_check_no_live_duplicate", lambda db, **kwargs: None)

    with pytest.raises(ValidationError):
        _schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now, minutes=5)

    live = db_session.execute(
        select(Schedule).where(Schedule.post_id == post.id, Schedule.status != ScheduleStatus.CANCELLED.value)
    ).scalars().all()
    assert [row.id for row in live] == [first.id]


def test_create_schedule_rejects_content_over_platform_limit(
    db_session, user_id, post, twitter_account, threads_account, now
):
    long_variant = add_variant(db_session, user_id=user_id, post_id=post.id, content="x" * 300)
    db_session.commit()

    with pytest.raises(ValidationError):
        _schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now, variant_id=long_variant.id)

    thread = _schedule(
        db_session, user_id=user_id, post=post, account=threads_account, now=now, variant_id=long_variant.id
    )
    assert thread.status == ScheduleStatus.PENDING.value


def test_post_edit_that_no_longer_fits_a_live_schedule_is_rejected(db_session, user_id, post, twitter_account, now):
    _schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now)

    with pytest.raises(ValidationError):
        update_post(db_session, user_id=user_id, post_id=post.id, content="y" * 281)


def test_selecting_a_variant_sets_final_content_and_clears_previous_choice(db_session, user_id, post):
    first = add_variant(db_session, user_id=user_id, post_id=post.id, content="Short and punchy", score=60)
    second = add_variant(db_session, user_id=user_id, post_id=post.id, content="Warm and detailed", score=85)
    add_variant(db_session, user_id=user_id, post_id=post.id, content="Runner up", score=70)

    select_variant(db_session, user_id=user_id, post_id=post.id, variant_id=first.id)
    select_variant(db_session, user_id=user_id, post_id=post.id, variant_id=second.id)
    db_session.commit()

    assert first.is_selected is False
    assert second.is_selected is True
    assert post.final_content == "Warm and detailed"
    assert get_selected_variant(db_session, user_id=user_id, post_id=post.id).id == second.id
    assert get_best_variant(db_session, user_id=user_id, post_id=post.id).id == second.id

    deselect_variant(db_session, user_id=user_id, post_id=post.id, variant_id=second.id)
    assert post.final_content is None
    assert post.publishable_content == post.content
    assert get_selected_variant(db_session, user_id=user_id, post_id=post.id) is None


def test_variant_of_another_post_cannot_be_selected(db_session, user_id, post):
    other = create_post(db_session, user_id=user_id, content="Another post")
    foreign = add_variant(db_session, user_id=user_id, post_id=other.id, content="Foreign copy")

    with pytest.raises(NotFoundError):
        select_variant(db_session, user_id=user_id, post_id=post.id, variant_id=foreign.id)
    assert get_best_variant(db_session, user_id=user_id, post_id=post.id) is None


def test_cancel_reverts_post_to_draft_only_without_other_live_schedules(
    db_session, user_id, post, twitter_account, threads_account, now
):
    tweet = _schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now)
    thread = _schedule(db_session, user_id=user_id, post=post, account=threads_account, now=now, minutes=10)

    cancel_schedule(db_session, user_id=user_id, schedule_id=tweet.id)
    assert post.status == PostStatus.SCHEDULED.value

    cancel_schedule(db_session, user_id=user_id, schedule_id=thread.id)
    assert post.status == PostStatus.DRAFT.value
    assert post.scheduled_for is None

    with pytest.raises(InvalidStateError):
        cancel_schedule(db_session, user_id=user_id, schedule_id=thread.id)


def test_cancel_unknown_schedule_is_not_found(db_session, user_id):
    with pytest.raises(NotFoundError):
        cancel_schedule(db_session, user_id=user_id, schedule_id=uuid.uuid4())


def test_failures_back_off_then_fail_terminally(db_session, user_id, post, twitter_account, now):
    schedule = _schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now)

    expected_delays = [5, 10, 20]
    for attempt, delay in enumerate(expected_delays, start=1):
        transition_status(db_session, schedule.id, ScheduleStatus.FAILED.value, now=now, error="boom")
        assert schedule.status == ScheduleStatus.PENDING.value
        assert schedule.retry_count == attempt
        assert schedule.next_retry_at == now + timedelta(minutes=delay)

    transition_status(db_session, schedule.id, ScheduleStatus.FAILED.value, now=now, error="still broken")
    assert schedule.status == ScheduleStatus.FAILED.value
    assert schedule.retry_count == 3
    assert schedule.next_retry_at is None
    assert schedule.error == "still broken"
    assert post.status == PostStatus.FAILED.value
    assert post.error_message == "still broken"


def test_zero_max_retries_fails_on_first_error(db_session, user_id, post, twitter_account, now):
    schedule = _schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now, max_retries=0)
    transition_status(db_session, schedule.id, ScheduleStatus.FAILED.value, now=now, error="nope")
    assert schedule.status == ScheduleStatus.FAILED.value
    assert schedule.retry_count == 0


def test_terminal_schedule_ignores_transitions(db_session, user_id, post, twitter_account, now):
    schedule = _schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now)
    cancel_schedule(db_session, user_id=user_id, schedule_id=schedule.id)

    result = transition_status(
        db_session,
        schedule.id,
        ScheduleStatus.PUBLISHED.value,
        now=now,
        published_post_id="123",
    )
    assert result.status == ScheduleStatus.CANCELLED.value
    assert result.published_post_id is None


def test_mixed_outcomes_make_post_partially_published(
    db_session, user_id, post, twitter_account, threads_account, now
):
    tweet = _schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now, max_retries=0)
    thread = _schedule(db_session, user_id=user_id, post=post, account=threads_account, now=now)

    transition_status(
        db_session,
        thread.id,
        ScheduleStatus.PUBLISHED.value,
        now=now,
        published_at=now,
        published_post_id="th-1",
        published_url="https://www.threads.net/@acme.threads/th-1",
    )
    assert thread.error is None
    assert post.status == PostStatus.SCHEDULED.value

    transition_status(db_session, tweet.id, ScheduleStatus.FAILED.value, now=now, error="rejected")
    assert post.status == PostStatus.PARTIALLY_PUBLISHED.value
    assert post.published_at == now


def test_retry_armed_schedule_is_only_due_after_next_retry_at(db_session, user_id, post, twitter_account, now):
    schedule = _schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now)
    later = now + timedelta(minutes=2)
    assert [row.id for row in due_now(db_session, later)] == [schedule.id]

    transition_status(db_session, schedule.id, ScheduleStatus.FAILED.value, now=later, error="timeout")
    db_session.commit()

    assert due_now(db_session, later + timedelta(minutes=1)) == []
    assert due_for_retry(db_session, later + timedelta(minutes=4)) == []
    assert [row.id for row in due_for_retry(db_session, later + timedelta(minutes=5))] == [schedule.id]


def test_claim_is_won_only_once(db_session, user_id, post, twitter_account, now):
    schedule = _schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now)
    later = now + timedelta(minutes=2)

    assert claim_schedule(db_session, schedule.id, now=later, lease_seconds=60) is True
    assert claim_schedule(db_session, schedule.id, now=later, lease_seconds=60) is False
    db_session.commit()
    db_session.expire_all()

    assert schedule.status == ScheduleStatus.PROCESSING.value
    assert schedule.lease_expires_at == later + timedelta(seconds=60)


def test_claim_refuses_schedule_that_is_not_due(db_session, user_id, post, twitter_account, now):
    schedule = _schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now, minutes=30)
    assert claim_schedule(db_session, schedule.id, now=now, lease_seconds=60) is False


def test_expired_lease_is_recovered_into_retry_path(db_session, user_id, post, twitter_account, now):
    schedule = _schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now)
    claimed_at = now + timedelta(minutes=2)
    assert claim_schedule(db_session, schedule.id, now=claimed_at, lease_seconds=60) is True
    db_session.commit()
    db_session.expire_all()

    assert recover_stale_processing(db_session, now=claimed_at + timedelta(seconds=30)) == []
    recovered = recover_stale_processing(db_session, now=claimed_at + timedelta(seconds=61))
    db_session.commit()

    assert recovered == [schedule.id]
    assert schedule.status == ScheduleStatus.PENDING.value
    assert schedule.retry_count == 1
    assert schedule.lease_expires_at is None
    assert schedule.publish_metadata["last_error_code"] == "lease_expired"


def test_update_schedule_reschedules_pending_only(db_session, user_id, post, twitter_account, now):
    schedule = _schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now)
    transition_status(db_session, schedule.id, ScheduleStatus.FAILED.value, now=now, error="x")

    updated = update_schedule(
        db_session,
        user_id=user_id,
        schedule_id=schedule.id,
        scheduled_for=now + timedelta(hours=3),
        now=now,
    )
    assert updated.scheduled_for == now + timedelta(hours=3)
    assert updated.next_retry_at is None
    assert post.scheduled_for == now + timedelta(hours=3)

    cancel_schedule(db_session, user_id=user_id, schedule_id=schedule.id)
    with pytest.raises(InvalidStateError):
        update_schedule(
            db_session,
            user_id=user_id,
            schedule_id=schedule.id,
            scheduled_for=now + timedelta(hours=4),
            now=now,
        )


def test_delete_post_refused_while_schedule_is_live(db_session, user_id, post, twitter_account, now):
    schedule = _schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now)
    with pytest.raises(InvalidStateError):
        delete_post(db_session, user_id=user_id, post_id=post.id)

    cancel_schedule(db_session, user_id=user_id, schedule_id=schedule.id)
    delete_post(db_session, user_id=user_id, post_id=post.id)
    db_session.commit()
    assert list_schedules(db_session, user_id=user_id) == []


def test_calendar_and_stats(db_session, user_id, post, twitter_account, threads_account, now):
    post.content = "x" * 150
    db_session.commit()
    tweet = _schedule(db_session, user_id=user_id, post=post, account=twitter_account, now=now, max_retries=0)
    _schedule(db_session, user_id=user_id, post=post, account=threads_account, now=now, minutes=90)
    transition_status(db_session, tweet.id, ScheduleStatus.PUBLISHED.value, now=now, published_post_id="1")
    db_session.commit()

    entries = get_calendar_schedules(db_session, user_id=user_id, start=now, end=now + timedelta(hours=2))
    assert [entry.title for entry in entries] == ["Acme Corp (twitter)", "acme.threads (threads)"]
    assert entries[0].content_preview == "x" * 100 + "..."

    stats = get_schedule_stats(db_session, user_id=user_id)
    assert stats.total == 2
    assert stats.by_status[ScheduleStatus.PUBLISHED.value] == 1
    assert stats.by_status[ScheduleStatus.PENDING.value] == 1
    assert stats.success_rate == 50
    assert stats.platform_breakdown == {"twitter": 1, "threads": 1}
