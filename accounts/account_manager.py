# accounts/account_manager.py
"""
Справочник аккаунтов: загрузка из CSV, валидация, перемешивание
и разбиение на группы с хедж-парами.
"""
import random
from pathlib import Path
from typing import Any, Dict, List, Optional, Sequence, Tuple

import pandas as pd

from core.logger import log_info, log_warning, log_error
from core.models import Account, Group, HedgePair

REQUIRED_COLUMNS = ["accountName", "exchange", "apiKey", "secretKey"]
OPTIONAL_COLUMNS = ["proxyUrl"]
PLACEHOLDER_API_KEY = "your_api_key_here"
PLACEHOLDER_SECRET_KEY = "your_secret_key_here"
TEMPLATE_FILE = "import.csv"


class AccountManager:
    """Загрузка аккаунтов и формирование групп"""

    def __init__(self, accounts_path: str = "accounts", rng: Optional[random.Random] = None):
        self.accounts_path = Path(accounts_path)
        self.accounts: List[Account] = []
        self._rng = rng or random.Random()

    # =========================================================================
    # ЗАГРУЗКА
    # =========================================================================

    def load_accounts(self, path: Optional[str] = None) -> List[Account]:
        """
        Загружает аккаунты из всех *.csv в папке аккаунтов (или из одного файла).

        Raises:
            FileNotFoundError: папка/файл не найдены или CSV-файлов нет
        """
        source = Path(path) if path else self.accounts_path
        log_info("system", f"Загрузка аккаунтов из: {source}", "AccountManager")

        if not source.exists():
            raise FileNotFoundError(f"Путь к аккаунтам не найден: {source}")

        if source.is_file():
            csv_files = [source]
        else:
            csv_files = sorted(p for p in source.iterdir() if p.suffix.lower() == ".csv")

        if not csv_files:
            raise FileNotFoundError(f"В папке {source} нет CSV файлов")

        log_info("system", f"Найдены CSV файлы: {', '.join(p.name for p in csv_files)}", "AccountManager")

        self.accounts = []
        for csv_file in csv_files:
            file_accounts = self._parse_csv_file(csv_file)
            log_info("system", f"Из {csv_file.name} загружено аккаунтов: {len(file_accounts)}", "AccountManager")
            self.accounts.extend(file_accounts)

        log_info("system", f"Всего загружено аккаунтов: {len(self.accounts)}", "AccountManager")
        return self.accounts

    def _parse_csv_file(self, file_path: Path) -> List[Account]:
        try:
            df = pd.read_csv(file_path, dtype=str, keep_default_na=False)
        except (pd.errors.ParserError, UnicodeDecodeError) as e:
            log_error("system", f"Ошибка разбора CSV {file_path}: {e}. Сохраните файл в формате CSV.",
                      "AccountManager")
            raise

        missing_columns = [col for col in REQUIRED_COLUMNS if col not in df.columns]
        if missing_columns:
            log_warning("system", f"В {file_path.name} отсутствуют колонки: {', '.join(missing_columns)}",
                        "AccountManager")
            return []

        for col in OPTIONAL_COLUMNS:
            if col not in df.columns:
                df[col] = ""

        df = df[REQUIRED_COLUMNS + OPTIONAL_COLUMNS].apply(lambda column: column.str.strip())

        accounts = []
        for row_number, row in enumerate(df.itertuples(index=False), start=2):
            account = self._row_to_account(row._asdict(), file_path, row_number)
            if account:
                accounts.append(account)

        if not accounts:
            log_warning("system", f"В {file_path.name} нет валидных аккаунтов. Проверьте формат и названия колонок.",
                        "AccountManager")
        return accounts

    @staticmethod
    def _row_to_account(row: Dict[str, str], file_path: Path, row_number: int) -> Optional[Account]:
        missing = [col for col in REQUIRED_COLUMNS if not row.get(col)]
        if missing:
            log_warning("system", f"Пропуск строки {row_number} в {file_path.name}: нет полей {', '.join(missing)}",
                        "AccountManager")
            return None

        account = Account(
            account_name=row["accountName"],
            exchange=row["exchange"],
            api_key=row["apiKey"],
            secret_key=row["secretKey"],
            proxy_url=row.get("proxyUrl", ""),
        )

        if account.api_key == PLACEHOLDER_API_KEY or account.secret_key == PLACEHOLDER_SECRET_KEY:
            log_warning("system", f"Пропуск строки {row_number} в {file_path.name}: ключи-заглушки",
                        "AccountManager")
            return None

        if not account.has_valid_keys:
            log_warning(account.account_name,
                        f"⚠️ Пропуск аккаунта {account.account_name}: API key совпадает с secret key",
                        "AccountManager")
            return None

        return account

    def get_accounts(self) -> List[Account]:
        return self.accounts

    # =========================================================================
    # ГРУППИРОВКА
    # =========================================================================

    def shuffle_accounts(self, accounts: Optional[Sequence[Account]] = None) -> List[Account]:
        shuffled = list(accounts if accounts is not None else self.accounts)
        self._rng.shuffle(shuffled)
        return shuffled

    def group_accounts(self, group_size: int = 6, accounts: Optional[Sequence[Account]] = None) -> List[Group]:
        """
        Гибкая группировка:
        - нечётное число аккаунтов → групп нет;
        - чётное и меньше 6 → одна группа из всех аккаунтов;
        - иначе группы по group_size и чётный остаток отдельной группой.
        """
        shuffled = self.shuffle_accounts(accounts)
        total = len(shuffled)
        groups: List[Group] = []

        log_info("system", f"Группировка {total} аккаунтов", "AccountManager")

        if total % 2 != 0:
            log_warning("system", f"Группировка пропущена: нечётное число аккаунтов ({total})", "AccountManager")
            return groups

        if total < 6:
            if total:
                groups.append(self._make_group("group_1", shuffled))
        else:
            for index, start in enumerate(range(0, total, group_size), start=1):
                chunk = shuffled[start:start + group_size]
                if len(chunk) == group_size or (len(chunk) >= 2 and len(chunk) % 2 == 0):
                    groups.append(self._make_group(f"group_{index}", chunk))
                else:
                    log_warning("system", f"Пропуск неполной группы из {len(chunk)} аккаунтов", "AccountManager")

        log_info("system", f"Создано групп: {len(groups)}", "AccountManager")
        return groups

    def _make_group(self, group_id: str, accounts: Sequence[Account]) -> Group:
        return Group(group_id=group_id, accounts=tuple(accounts), pairs=self.create_hedge_pairs(accounts))

    @staticmethod
    def create_hedge_pairs(accounts: Sequence[Account]) -> Tuple[HedgePair, ...]:
        """Пары из соседних аккаунтов: 1-й лонг / 2-й шорт, 3-й / 4-й и т.д."""
        if len(accounts) < 2:
            raise ValueError("Для хедж-пар нужно минимум 2 аккаунта")
        if len(accounts) % 2 != 0:
            raise ValueError(f"Для хедж-пар нужно чётное число аккаунтов, получено {len(accounts)}")

        return tuple(
            HedgePair(pair_id=f"pair_{i // 2 + 1}", long=accounts[i], short=accounts[i + 1])
            for i in range(0, len(accounts), 2)
        )

    def get_account_stats(self, group_size: int = 6) -> Dict[str, Any]:
        total = len(self.accounts)
        max_groups = 0
        max_pairs = 0

        if total % 2 == 0 and total >= 2:
            max_pairs = total // 2
            if total < 6:
                max_groups = 1
            else:
                full_groups, remainder = divmod(total, group_size)
                max_groups = full_groups + (1 if remainder >= 2 else 0)

        return {
            "total": total,
            "max_groups": max_groups,
            "max_pairs": max_pairs,
            "can_group": total >= 2 and total % 2 == 0,
        }

    def create_sample_template(self) -> Path:
        """Создает accounts/import.csv с примером заполнения"""
        self.accounts_path.mkdir(parents=True, exist_ok=True)
        template_path = self.accounts_path / TEMPLATE_FILE
        pd.DataFrame([
            {"accountName": "Account_001", "exchange": "Aster", "apiKey": PLACEHOLDER_API_KEY,
             "secretKey": PLACEHOLDER_SECRET_KEY, "proxyUrl": ""},
            {"accountName": "Account_002", "exchange": "Aster", "apiKey": PLACEHOLDER_API_KEY,
             "secretKey": PLACEHOLDER_SECRET_KEY, "proxyUrl": ""},
        ]).to_csv(template_path, index=False)
        log_info("system", f"✅ Шаблон создан: {template_path}", "AccountManager")
        return template_path
