import argparse
import asyncio
import os
import sys
from decimal import getcontext

# --- 1. Настройка путей (обязательно в самом верху) ---
project_root = os.path.dirname(os.path.abspath(__file__))
if project_root not in sys.path:
    sys.path.insert(0, project_root)

# --- 2. Импорты проекта ---
from accounts.account_manager import AccountManager
from core.enums import EventType
from core.events import EventBus
from core.functions import format_currency, format_percentage
from core.logger import log_critical, log_error, log_info, log_warning, trading_logger
from core.settings_config import SystemConfig, load_system_config, system_config
from coordinator.trading_orchestrator import TradingOrchestrator
from database.pnl_tracker import PnLTracker

# --- 3. Настройка точности ---
getcontext().prec = 28


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Hedge group trading orchestrator")
    parser.add_argument("command", nargs="?", default="trade", choices=["trade", "close-all", "pnl", "template"],
                        help="trade - запуск торговли, close-all - закрыть все позиции, "
                             "pnl - отчёт по PnL, template - шаблон CSV аккаунтов")
    parser.add_argument("--env-file", default=None, help="путь к .env")
    parser.add_argument("--accounts", default=None, help="папка или CSV файл с аккаунтами")
    parser.add_argument("--export", default=None, help="для pnl: путь CSV для экспорта")
    parser.add_argument("--log-level", default="INFO", help="уровень логирования")
    return parser.parse_args(argv)


def load_accounts(config: SystemConfig, path: str = None) -> AccountManager:
    manager = AccountManager(config.accounts_path)
    manager.load_accounts(path)
    stats = manager.get_account_stats(config.trading.group_size)
    log_info("system", f"Аккаунтов: {stats['total']}, возможно групп: {stats['max_groups']}, "
                       f"пар: {stats['max_pairs']}", "main")
    return manager


async def run_trading(config: SystemConfig, accounts_path: str = None):
    """Торговля до Ctrl+C или до остановки watchdog-ом"""
    manager = load_accounts(config, accounts_path)
    groups = manager.group_accounts(config.trading.group_size)
    if not groups:
        log_warning("system", "Нет групп для торговли. Нужно чётное число валидных аккаунтов.", "main")
        return

    event_bus = EventBus()
    tracker = PnLTracker(config.pnl_db_path)
    orchestrator = TradingOrchestrator(config, event_bus=event_bus)

    try:
        await tracker.initialize()
        await event_bus.start()
        await event_bus.subscribe(EventType.CYCLE_COMPLETED, tracker.handle_cycle_completed)

        await orchestrator.start_trading(groups)
        log_info("system", "=== ТОРГОВЛЯ ЗАПУЩЕНА. Ctrl+C для остановки ===", "main")
        await orchestrator.join()

    except (KeyboardInterrupt, asyncio.CancelledError):
        log_info("system", "Получен сигнал завершения", "main")
    except Exception as e:
        log_critical("system", f"Критическая ошибка: {e}", "main")
    finally:
        log_info("system", "=== НАЧАЛО ПРОЦЕДУРЫ ЗАВЕРШЕНИЯ РАБОТЫ ===", "main")
        try:
            await orchestrator.stop_trading()
            log_info("system", "Ожидание завершения текущих циклов групп...", "main")
            await orchestrator.join()
        except Exception as e:
            log_error("system", f"Ошибка остановки оркестратора: {e}", "main")

        status = orchestrator.get_status()
        log_info("system", f"Итоговый PnL: {format_currency(status['total_pnl'])}", "main")

        await orchestrator.close()
        await event_bus.stop()
        await tracker.close()
        log_info("system", "=== ОСТАНОВЛЕНО ===", "main")


async def run_close_all(config: SystemConfig, accounts_path: str = None):
    manager = load_accounts(config, accounts_path)
    orchestrator = TradingOrchestrator(config)
    result = await orchestrator.close_all_positions(manager.get_accounts())
    for error in result.errors:
        log_error("system", error, "main")
    log_info("system", f"Закрыто позиций: {result.closed_count}, успешно: {result.success}", "main")


async def run_pnl_report(config: SystemConfig, export_path: str = None):
    tracker = PnLTracker(config.pnl_db_path)
    await tracker.initialize()
    try:
        overall = await tracker.get_overall_summary()
        log_info("system", f"Общий PnL: {format_currency(overall['total_pnl'])}, сделок: {overall['trade_count']}, "
                           f"win rate: {format_percentage(overall['win_rate'])}", "main")
        for group in await tracker.get_group_comparison():
            log_info(group["group_id"], f"PnL: {format_currency(group['total_pnl'])}, "
                                        f"сделок: {group['trade_count']}, "
                                        f"win rate: {format_percentage(group['win_rate'])}", "main")
        for day in await tracker.get_daily_stats(7):
            log_info("system", f"{day['date']}: {format_currency(day['pnl'])} ({day['trade_count']} сделок)", "main")
        if export_path:
            await tracker.export_to_csv(export_path)
    finally:
        await tracker.close()


def main(argv=None):
    args = parse_args(argv)
    config = load_system_config(args.env_file) if args.env_file else system_config
    trading_logger.configure(config.log_dir, args.log_level)

    if args.command == "template":
        AccountManager(config.accounts_path).create_sample_template()
    elif args.command == "close-all":
        asyncio.run(run_close_all(config, args.accounts))
    elif args.command == "pnl":
        asyncio.run(run_pnl_report(config, args.export))
    else:
        try:
            asyncio.run(run_trading(config, args.accounts))
        except KeyboardInterrupt:
            log_info("system", "Принудительное завершение", "main")


if __name__ == "__main__":
    main()
