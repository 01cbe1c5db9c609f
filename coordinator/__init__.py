"""
Hedge Group Coordinator

Запускает независимые группы аккаунтов, каждая из которых циклически
открывает и закрывает встречные позиции на своих хедж-парах.
"""

from .group_runner import GroupRunner
from .trading_orchestrator import TradingOrchestrator

__all__ = ['GroupRunner', 'TradingOrchestrator']
