import pytest

from config import load_config
from main import run_command
from storage import SQLiteRepository
from strategy.models import Checkpoint, Stage, StrategyConfig, StrategyInstance


@pytest.fixture
def env(monkeypatch):
    monkeypatch.setattr('os.environ.get', lambda key, default=None: default)


async def _seed(db_path):
    instance = StrategyInstance(
        instance_id='strategy_1_abc',
        config=StrategyConfig(
            pool_address='0x36696169c63e42cd08ce11f5deebbcebae652050',
            token0='0x55d398326f99059ff775485246999027b3197955',
            token1='0xbb4cdb9cbd36b01bd1cbaebf2de08d9173bc095c',
            amount=5_000_000,
            aggregator_slippage_pct=0.5,
            liquidity_slippage_pct=1.0,
            tick_lower=-500,
            tick_upper=500,
        ),
        stage=Stage.MONITOR,
        created_at=1_000.0,
        checkpoint=Checkpoint(stage=Stage.MONITOR, timestamp=1_060.0, substep='confirmation_pending'),
        swap_tx_hash='0x' + 'cd' * 32,
    )
    repository = SQLiteRepository(db_path)
    await repository.set(instance.storage_key, instance.to_record())
    await repository.close()


@pytest.mark.asyncio
async def test_status_lists_persisted_instances(env, tmp_path, capsys):
    db_path = tmp_path / 'checkpoints.db'
    await _seed(db_path)

    exit_code = await run_command(load_config(['--db-path', str(db_path), 'status']))

    output = capsys.readouterr().out
    assert exit_code == 0
    assert 'strategy_1_abc' in output
    assert 'MONITOR' in output
    assert 'confirmation_pending' in output


@pytest.mark.asyncio
async def test_delete_removes_record(env, tmp_path, capsys):
    db_path = tmp_path / 'checkpoints.db'
    await _seed(db_path)
    config = load_config(['--db-path', str(db_path), 'delete', 'strategy_1_abc'])

    assert await run_command(config) == 0
    assert await run_command(config) == 1
    assert 'No record for strategy_1_abc' in capsys.readouterr().out


@pytest.mark.asyncio
async def test_status_with_empty_database(env, tmp_path, capsys):
    exit_code = await run_command(load_config(['--db-path', str(tmp_path / 'empty.db'), 'status']))

    assert exit_code == 0
    assert 'No strategy instances recorded.' in capsys.readouterr().out
