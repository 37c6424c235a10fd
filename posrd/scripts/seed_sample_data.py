#!/usr/bin/env python3
"""
Seed a demo store: categories, products, customers, NCF sequences, a few
RNC registry rows and the default business settings.

Idempotent: rows that already exist (by name/code/document) are skipped.
"""
import argparse
import os
from datetime import datetime, timedelta, timezone

import psycopg
from psycopg.rows import dict_row

CATEGORIES = [
    ("Bebidas", "Refrescos, jugos y bebidas alcohólicas"),
    ("Alimentos", "Comida empacada, snacks y productos alimenticios"),
    ("Limpieza", "Productos de limpieza y higiene personal"),
    ("Tecnología", "Dispositivos electrónicos y accesorios"),
    ("Farmacia", "Medicamentos y productos de salud"),
    ("Cosméticos", "Productos de belleza y cuidado personal"),
    ("Hogar", "Artículos para el hogar y decoración"),
    ("Deportes", "Equipos y accesorios deportivos"),
]

# (code, name, description, price, cost, stock, min_stock, category, taxable)
PRODUCTS = [
    ("7401005988967", "Coca Cola 2L", "Refresco de cola 2 litros", "89.00", "65.00", 120, 20, "Bebidas", True),
    ("7401005988968", "Agua Planeta Azul 1L", "Agua purificada 1 litro", "35.00", "22.00", 200, 50, "Bebidas", True),
    ("7401005988969", "Cerveza Presidente 355ml", "Cerveza nacional lata 355ml", "95.00", "70.00", 80, 15, "Bebidas", True),
    ("7401005988970", "Arroz Blanquita 5lb", "Arroz blanco 5 libras", "165.00", "125.00", 150, 25, "Alimentos", False),
    ("7401005988971", "Aceite Mazola 1L", "Aceite de maíz 1 litro", "285.00", "220.00", 90, 15, "Alimentos", True),
    ("7401005988972", "Pan Tostado Bimbo", "Pan de molde tostado 680g", "125.00", "95.00", 45, 10, "Alimentos", False),
    ("7401005988973", "Detergente Tide 1kg", "Detergente en polvo 1 kilogramo", "245.00", "185.00", 75, 12, "Limpieza", True),
    ("7401005988974", "Jabón Palmolive", "Jabón de tocador 90g", "65.00", "45.00", 100, 20, "Limpieza", True),
    ("7401005988975", "Cable USB-C 1m", "Cable de carga y datos USB-C", "450.00", "280.00", 30, 5, "Tecnología", True),
    ("7401005988976", "Auriculares Bluetooth", "Auriculares inalámbricos", "1850.00", "1200.00", 12, 3, "Tecnología", True),
    ("7401005988977", "Paracetamol 500mg", "Caja de 20 tabletas", "95.00", "60.00", 60, 10, "Farmacia", False),
    ("7401005988978", "Alcohol 70% 250ml", "Alcohol isopropílico", "85.00", "55.00", 40, 10, "Farmacia", True),
    ("7401005988979", "Champú Pantene 400ml", "Champú para todo tipo de cabello", "325.00", "240.00", 35, 8, "Cosméticos", True),
    ("7401005988980", "Bombillo LED 12W", "Bombillo de bajo consumo", "175.00", "110.00", 50, 10, "Hogar", True),
    ("7401005988981", "Pelota de Volleyball", "Pelota oficial tamaño 5", "950.00", "650.00", 8, 2, "Deportes", True),
    ("7401005988982", "Café Santo Domingo 454g", "Café molido tradicional", "310.00", "240.00", 70, 15, "Alimentos", False),
]

# (name, email, phone, address, document_type, document_number)
CUSTOMERS = [
    ("María González", "maria.gonzalez@email.com", "809-555-0101", "Calle Principal #123, Santo Domingo", "CEDULA", "00112345678"),
    ("Supermercado La Familia", "compras@lafamilia.com.do", "809-555-0102", "Av. 27 de Febrero #456, Santo Domingo", "RNC", "130123456"),
    ("Carlos Martínez", "carlos.martinez@email.com", "829-555-0103", "Zona Colonial, Santo Domingo", "CEDULA", "00198765432"),
    ("Restaurante El Buen Sabor SRL", "admin@buensabor.com.do", "809-555-0104", "Piantini, Santo Domingo", "RNC", "130987654"),
    ("Ana Rodríguez", "ana.rodriguez@email.com", "849-555-0105", "Los Alcarrizos, Santo Domingo Oeste", "CEDULA", "40212345678"),
]

NCF_SEQUENCES = [("B01", 50_000_000), ("B02", 50_000_000), ("B03", 50_000_000), ("B04", 50_000_000)]

RNC_REGISTRY = [
    ("130123456", "SUPERMERCADO LA FAMILIA SRL", "LA FAMILIA", "SUPERMERCADOS"),
    ("130987654", "RESTAURANTE EL BUEN SABOR SRL", "EL BUEN SABOR", "RESTAURANTES"),
    ("101234567", "DISTRIBUIDORA NACIONAL SA", "DINASA", "DISTRIBUCION"),
]


def seed(cur) -> dict:
    counts = {"categories": 0, "products": 0, "customers": 0, "ncf_sequences": 0, "rnc_registry": 0, "business_settings": 0}

    category_ids = {}
    for name, description in CATEGORIES:
        cur.execute(
            """
            INSERT INTO categories (id, name, description)
            VALUES (gen_random_uuid(), %s, %s)
            ON CONFLICT (name) DO NOTHING
            RETURNING id
            """,
            (name, description),
        )
        row = cur.fetchone()
        if row:
            counts["categories"] += 1
        else:
            cur.execute("SELECT id FROM categories WHERE name = %s", (name,))
            row = cur.fetchone()
        category_ids[name] = row["id"]

    for code, name, description, price, cost, stock, min_stock, category, taxable in PRODUCTS:
        cur.execute(
            """
            INSERT INTO products (id, code, name, description, price, cost, stock, min_stock, taxable, category_id)
            VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (code) DO NOTHING
            RETURNING id
            """,
            (code, name, description, price, cost, stock, min_stock, taxable, category_ids[category]),
        )
        counts["products"] += 1 if cur.fetchone() else 0

    for name, email, phone, address, doc_type, doc_number in CUSTOMERS:
        cur.execute(
            """
            INSERT INTO customers (id, name, email, phone, address, document_type, document_number, rnc, cedula)
            VALUES (gen_random_uuid(), %s, %s, %s, %s, %s, %s, %s, %s)
            ON CONFLICT (document_number) DO NOTHING
            RETURNING id
            """,
            (
                name, email, phone, address, doc_type, doc_number,
                doc_number if doc_type == "RNC" else None,
                doc_number if doc_type == "CEDULA" else None,
            ),
        )
        counts["customers"] += 1 if cur.fetchone() else 0

    expiry = datetime.now(timezone.utc) + timedelta(days=365)
    for ncf_type, max_number in NCF_SEQUENCES:
        cur.execute("SELECT 1 FROM ncf_sequences WHERE type = %s AND is_active = true", (ncf_type,))
        if cur.fetchone():
            continue
        cur.execute(
            """
            INSERT INTO ncf_sequences (id, type, current_number, max_number, expiry_date, is_active)
            VALUES (gen_random_uuid(), %s, 0, %s, %s, true)
            """,
            (ncf_type, max_number, expiry),
        )
        counts["ncf_sequences"] += 1

    for rnc, name, commercial_name, category in RNC_REGISTRY:
        cur.execute(
            """
            INSERT INTO rnc_registry (rnc, name, commercial_name, category, status)
            VALUES (%s, %s, %s, %s, 'ACTIVO')
            ON CONFLICT (rnc) DO NOTHING
            RETURNING rnc
            """,
            (rnc, name, commercial_name, category),
        )
        counts["rnc_registry"] += 1 if cur.fetchone() else 0

    cur.execute("SELECT 1 FROM business_settings WHERE is_default = true AND is_active = true")
    if not cur.fetchone():
        cur.execute(
            """
            INSERT INTO business_settings (id, name, rnc, address, phone, email, slogan, city, province,
                                           economic_activity, receipt_footer, is_default, is_active)
            VALUES (gen_random_uuid(), 'POS Dominicana', '130123456', 'Calle Principal #123', '(809) 555-0123',
                    'info@posdominicana.com', 'Tu punto de venta de confianza', 'Santo Domingo', 'Distrito Nacional',
                    'Venta al por menor', '¡Gracias por su compra!', true, true)
            """
        )
        counts["business_settings"] += 1
    return counts


def main() -> int:
    parser = argparse.ArgumentParser(description="Seed demo catalog, customers and NCF sequences.")
    parser.add_argument(
        "--db",
        default=os.getenv("DATABASE_URL") or "postgresql://localhost/posrd",
        help="Postgres connection string (defaults to $DATABASE_URL).",
    )
    args = parser.parse_args()

    with psycopg.connect(args.db, row_factory=dict_row) as conn:
        with conn.transaction():
            with conn.cursor() as cur:
                counts = seed(cur)
    for k, v in counts.items():
        print(f"{k}: {v}")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
