from datetime import date
from typing import Optional

from dateutil.relativedelta import relativedelta

import database as db

BALANCE_KEYWORDS = ("saldo", "quanto tenho")
SUMMARY_KEYWORDS = ("relatório", "relatorio", "resumo")

HELP_REPLY = (
    "Olá! Sou seu assistente financeiro. Posso registrar transações como "
    "\"Gastei R$ 50 no mercado\" ou responder perguntas sobre seu saldo e relatórios."
)


def format_brl(value: float) -> str:
    return f"R$ {float(value):.2f}"


def month_bounds(today: date):
    start = today.replace(day=1)
    end = start + relativedelta(months=1, days=-1)
    return start.isoformat(), end.isoformat()


def answer_query(message: str, user_id: int, today: Optional[date] = None, conn=None) -> str:
    """
    Keyword match on the user's own words (case-insensitive substring):
      saldo / quanto tenho        -> all-time balance
      relatório / resumo          -> current calendar month summary
    Anything else gets the help text. Read-only.
    """
    text = (message or "").casefold()

    if any(k in text for k in BALANCE_KEYWORDS):
        s = db.fetch_summary(user_id, conn=conn)
        return (
            f"💰 Seu saldo atual é {format_brl(s['balance'])} "
            f"(Receitas: {format_brl(s['income'])}, Despesas: {format_brl(s['expense'])})"
        )

    if any(k in text for k in SUMMARY_KEYWORDS):
        start, end = month_bounds(today or date.today())
        s = db.fetch_summary(user_id, start, end, conn=conn)
        return (
            f"📊 Resumo do mês: Receitas {format_brl(s['income'])}, "
            f"Despesas {format_brl(s['expense'])}, Lucro {format_brl(s['balance'])}"
        )

    return HELP_REPLY
