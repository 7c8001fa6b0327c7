from types import SimpleNamespace
from unittest.mock import AsyncMock

import pytest

from app.database.crud.user import get_user_by_id
from app.handlers.admin import cmd_admin, parse_amount_kopeks
from app.services.activity_log_service import get_user_activity
from app.services.balance_service import get_balance


def _message() -> SimpleNamespace:
    return SimpleNamespace(answer=AsyncMock(), bot=SimpleNamespace(send_message=AsyncMock()))


async def _run(db, args, *, admin=None, is_admin=True):
    message = _message()
    await cmd_admin(message, SimpleNamespace(args=args), db=db, db_user=admin, is_admin=is_admin)
    return message


def _reply(message) -> str:
    return message.answer.await_args.args[0]


@pytest.mark.parametrize(
    ('raw', 'expected'),
    [('100', 10_000), ('-50.5', -5_050), ('12,34', 1_234), ('abc', None), ('nan', None), ('0', 0)],
)
def test_parse_amount_kopeks(raw, expected):
    assert parse_amount_kopeks(raw) == expected


async def test_non_admin_gets_no_reply(db):
    message = await _run(db, 'stats', is_admin=False)

    message.answer.assert_not_awaited()


async def test_unknown_subcommand_shows_help(db):
    message = await _run(db, None)

    assert '/admin balance' in _reply(message)


async def test_block_unblock_and_view_user(db, user_factory):
    admin_id = await user_factory()
    target_id = await user_factory(username='dave')
    admin = await get_user_by_id(db, admin_id)

    await _run(db, f'block {target_id}', admin=admin)
    card = await _run(db, f'user {target_id}', admin=admin)
    assert 'Заблокирован: да' in _reply(card)

    await _run(db, f'unblock {target_id}', admin=admin)
    target = await get_user_by_id(db, target_id)
    await db.refresh(target)
    assert target.is_blocked is False

    entries, _ = await get_user_activity(db, target_id)
    assert [entry.data for entry in reversed(entries)] == [
        {'action': 'block', 'admin_id': admin_id},
        {'action': 'unblock', 'admin_id': admin_id},
    ]


async def test_balance_adjustment_in_rubles(db, user_factory):
    admin = await get_user_by_id(db, await user_factory())
    target_id = await user_factory(balance_kopeks=10_000)

    added = await _run(db, f'balance {target_id} 25.50', admin=admin)
    assert '125.50 ₽' in _reply(added)

    refused = await _run(db, f'balance {target_id} -500', admin=admin)
    assert _reply(refused).startswith('❌')
    assert await get_balance(db, target_id) == 12_550

    usage = await _run(db, f'balance {target_id}', admin=admin)
    assert 'Использование' in _reply(usage)


async def test_search_logs_and_stats(db, user_factory):
    admin = await get_user_by_id(db, await user_factory(username='root_admin'))
    target_id = await user_factory(username='erin')
    await _run(db, f'block {target_id}', admin=admin)

    users = await _run(db, 'users erin', admin=admin)
    assert '@erin' in _reply(users)
    assert '@root_admin' not in _reply(users)

    logs = await _run(db, f'logs {target_id}', admin=admin)
    assert 'action=block' in _reply(logs)

    recent = await _run(db, 'logs', admin=admin)
    assert f'[{target_id}]' in _reply(recent)

    stats = await _run(db, 'stats', admin=admin)
    assert 'Заблокировано: 1' in _reply(stats)

    missing = await _run(db, 'user 999999', admin=admin)
    assert _reply(missing).startswith('❌')


async def test_notify_broadcasts_through_the_bot(db, user_factory):
    admin = await get_user_by_id(db, await user_factory())
    await user_factory()

    message = await _run(db, 'notify Плановые работы', admin=admin)

    assert message.bot.send_message.await_count == 2
    assert 'Доставлено: 2' in _reply(message)
