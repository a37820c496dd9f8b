from __future__ import annotations

import argparse
from datetime import date

from dental_backend.auth_models import Role
from dental_backend.auth_service import sign_up
from dental_backend.cash_register import list_shifts, review_stats
from dental_backend.config import configure_logging
from dental_backend.reports import range_report
from dental_backend.seed import seed_base
from dental_backend.services import init_db, list_doctors, list_treatments, search_patients
from dental_backend.staff_service import list_profiles


def cmd_init(args: argparse.Namespace) -> None:
    init_db()
    seed_base()
    print("BD inicializada y datos base cargados.")


def cmd_create_user(args: argparse.Namespace) -> None:
    user_id = sign_up(args.email, args.password, args.first_name, args.last_name, role=Role(args.role))
    print(f"Usuario creado: {user_id}")


def cmd_list(args: argparse.Namespace) -> None:
    if args.entity == "doctors":
        for d in list_doctors(active_only=False):
            print(f"{d['id']} | {d['full_name']} | {d['specialty'] or '-'} | {'activo' if d['is_active'] else 'inactivo'}")
    elif args.entity == "patients":
        for p in search_patients(args.q):
            print(f"{p['id']} | {p['last_name']} {p['first_name']} | {p['phone'] or '-'}")
    elif args.entity == "treatments":
        for t in list_treatments():
            print(f"{t['id']} | {t['category']} | {t['name']} | ${t['base_price']} ({t['duration_minutes']} min)")
    elif args.entity == "users":
        for u in list_profiles():
            print(f"{u['id']} | {u['email']} | {u['role']} | {'activo' if u['is_active'] else 'inactivo'}")


def cmd_cash_status(args: argparse.Namespace) -> None:
    """Cortes del día con su estado, como los ve el administrador."""
    day = date.fromisoformat(args.day) if args.day else date.today()
    rows = list_shifts(date_from=day, date_to=day)
    if not rows:
        print(f"Sin cortes para {day.isoformat()}.")
        return

    for r in rows:
        diff = r["difference"]
        diff_txt = f"{diff:+.2f} ({r['difference_label']})" if diff is not None else "-"
        print(f"{r['id']} | {r['cashier_name']} | {r['status']} | cierre {r['closing_balance']:.2f} | dif. {diff_txt}")

    stats = review_stats(rows)
    print(
        f"Pendientes: {stats['pending']}  Aprobados: {stats['approved']}  Rechazados: {stats['rejected']}  "
        f"Faltantes: {stats['shortages']}  Sobrantes: {stats['surpluses']}"
    )


def cmd_report(args: argparse.Namespace) -> None:
    r = range_report(date.fromisoformat(args.date_from), date.fromisoformat(args.date_to))
    print(f"Reporte {r['date_from']} a {r['date_to']}")
    print(f"Ingresos: {r['revenue']['total']:.2f}")
    for method, total in r["revenue"]["by_method"].items():
        print(f"  {method}: {total:.2f}")
    print(f"Pacientes nuevos: {r['new_patients']}")
    print("Citas por estado:")
    for st, n in r["appointments_by_status"].items():
        print(f"  {st}: {n}")
    print("Tratamientos más cobrados:")
    for t in r["top_treatments"]:
        print(f"  {t['treatment']}: {t['revenue']:.2f} ({t['payments']} pagos)")


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="denttia_cli", description="CLI Denttia (administración y reportes)")
    sub = p.add_subparsers(required=True)

    p_init = sub.add_parser("init", help="Crea la BD y carga datos base")
    p_init.set_defaults(func=cmd_init)

    p_user = sub.add_parser("create-user", help="Crea un usuario del personal")
    p_user.add_argument("--email", required=True)
    p_user.add_argument("--password", required=True)
    p_user.add_argument("--first-name", default=None)
    p_user.add_argument("--last-name", default=None)
    p_user.add_argument("--role", choices=[r.value for r in Role if r != Role.AUDITOR], default=Role.RECEPTIONIST.value)
    p_user.set_defaults(func=cmd_create_user)

    p_list = sub.add_parser("list", help="Lista entidades")
    p_list.add_argument("entity", choices=["doctors", "patients", "treatments", "users"])
    p_list.add_argument("--q", default=None, help="Filtro de búsqueda (pacientes)")
    p_list.set_defaults(func=cmd_list)

    p_cash = sub.add_parser("cash-status", help="Estado de los cortes de caja del día")
    p_cash.add_argument("--day", default=None, help="Fecha ISO, p. ej. 2026-01-14 (default: hoy)")
    p_cash.set_defaults(func=cmd_cash_status)

    p_rep = sub.add_parser("report", help="Reporte por rango de fechas")
    p_rep.add_argument("--from", dest="date_from", required=True)
    p_rep.add_argument("--to", dest="date_to", required=True)
    p_rep.set_defaults(func=cmd_report)

    return p


def main() -> None:
    parser = build_parser()
    args = parser.parse_args()
    configure_logging()
    init_db()  # garantiza las tablas
    args.func(args)


if __name__ == "__main__":
    main()
