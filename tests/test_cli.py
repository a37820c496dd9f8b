from __future__ import annotations

from datetime import date
from decimal import Decimal

import pytest

from dental_backend import cash_register, services
from dental_backend.cli import build_parser


def run(*argv: str) -> None:
    args = build_parser().parse_args(list(argv))
    args.func(args)


def test_init_seeds_catalogs(capsys):
    run("init")
    run("init")
    assert "BD inicializada" in capsys.readouterr().out
    assert len(services.list_treatments()) == 8


def test_create_user_and_list(capsys):
    run("create-user", "--email", "caja@denttia.test", "--password", "secreto123", "--role", "receptionist")
    run("list", "users")
    out = capsys.readouterr().out
    assert "Usuario creado" in out
    assert "caja@denttia.test | receptionist | activo" in out


def test_auditor_role_is_not_offered():
    with pytest.raises(SystemExit):
        build_parser().parse_args(["create-user", "--email", "x@y.z", "--password", "abcdef", "--role", "auditor"])


def test_list_patients_with_filter(capsys, patient_id):
    services.create_patient(services.PatientData("Mario", "Gómez"))
    run("list", "patients", "--q", "pérez")
    out = capsys.readouterr().out
    assert "Pérez Lucía | 2381106200" in out
    assert "Gómez" not in out


def test_cash_status(capsys, cashier):
    today = date.today()
    run("cash-status", "--day", today.isoformat())
    assert "Sin cortes" in capsys.readouterr().out

    cash_register.submit_shift(
        cashier, cash_register.ShiftDeclaration(opening_balance=Decimal("1000"), services_cash=Decimal("500"))
    )
    run("cash-status")
    out = capsys.readouterr().out
    assert "Rosa Recepción | pending | cierre 1500.00 | dif. -" in out
    assert "Pendientes: 1" in out


def test_report(capsys):
    run("report", "--from", "2026-01-01", "--to", "2026-01-31")
    out = capsys.readouterr().out
    assert "Reporte 2026-01-01 a 2026-01-31" in out
    assert "Ingresos: 0.00" in out
