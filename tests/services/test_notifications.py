import pytest
from telegram.error import TelegramError

from services.notifications import CompositeProgressSink, LoggingProgressSink, TelegramProgressSink


class FakeBot:
    def __init__(self, error=None):
        self.error = error
        self.messages = []

    async def send_message(self, chat_id, text, parse_mode=None):
        if self.error:
            raise self.error
        self.messages.append((chat_id, text, parse_mode))


@pytest.mark.asyncio
async def test_telegram_sink_escapes_html():
    bot = FakeBot()
    sink = TelegramProgressSink(bot, '12345')

    await sink.on_transition('strategy_1_abc', 'QUOTE', 0.0, 'Quote 612 via <PancakeSwap V3>')
    await sink.on_error('strategy_1_abc', 'reverted & <gone>')

    assert len(bot.messages) == 2
    chat_id, text, parse_mode = bot.messages[0]
    assert chat_id == '12345'
    assert parse_mode == 'HTML'
    assert '&lt;PancakeSwap V3&gt;' in text
    assert '1970-01-01 00:00:00 UTC' in text
    assert 'reverted &amp; &lt;gone&gt;' in bot.messages[1][1]


@pytest.mark.asyncio
async def test_telegram_failure_is_logged_not_raised(caplog):
    sink = TelegramProgressSink(FakeBot(error=TelegramError('Forbidden: bot was blocked')), '12345')

    with caplog.at_level('WARNING'):
        await sink.on_transition('strategy_1_abc', 'DONE', 0.0, 'Swap confirmed')

    assert 'Telegram notification failed' in caplog.text


@pytest.mark.asyncio
async def test_composite_sink_fans_out(caplog):
    bot = FakeBot()
    sink = CompositeProgressSink([LoggingProgressSink(), TelegramProgressSink(bot, '1')])

    with caplog.at_level('INFO'):
        await sink.on_transition('strategy_1_abc', 'SWAP', 0.0, 'Swap broadcast')
        await sink.on_error('strategy_1_abc', 'boom')

    assert len(bot.messages) == 2
    assert '[strategy_1_abc] -> SWAP: Swap broadcast' in caplog.text
    assert '[strategy_1_abc] failed: boom' in caplog.text
