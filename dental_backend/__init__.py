"""
Backend de la clínica Denttia.

Estructura:
- config.py         : variables de entorno, logging, tolerancia del corte
- clinic.py         : datos de la clínica y enlaces de WhatsApp
- db.py             : engine y sesiones SQLAlchemy
- models.py         : modelos ORM y enums del dominio
- auth_*.py         : perfiles, JWT, sesiones de auditor y bitácora
- services.py       : pacientes, doctores, tratamientos y agenda
- clinical.py       : ficha, anamnesis, odontograma, notas, recetas, presupuestos
- billing.py        : pagos, comisiones y resumen de finanzas
- inventory.py      : inventario y movimientos de stock
- cash_register.py  : corte de caja (envío y revisión)
- realtime.py       : feed de cambios en tiempo real
- reports.py        : tablero y reportes
- staff_service.py  : personal y sesiones de auditoría
- seed.py           : datos iniciales
- api_main.py       : API REST (FastAPI)
- cli.py            : administración por línea de comandos
"""
