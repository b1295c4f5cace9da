SCHEMA_SQL = r"""
-- Tenants (one salon account each)
CREATE TABLE IF NOT EXISTS tenants (
  id TEXT PRIMARY KEY,
  name TEXT NOT NULL,
  created_at TEXT NOT NULL
);

-- Catalog
CREATE TABLE IF NOT EXISTS products (
  id TEXT PRIMARY KEY,
  tenant_id TEXT NOT NULL,
  sku TEXT NOT NULL,                     -- upper-cased
  name TEXT NOT NULL,
  brand TEXT,
  category TEXT NOT NULL,
  unit TEXT NOT NULL DEFAULT 'unit',
  unit_size REAL,
  retail_price REAL NOT NULL DEFAULT 0,
  cost_price REAL NOT NULL DEFAULT 0,
  min_stock_threshold INTEGER NOT NULL DEFAULT 0 CHECK (min_stock_threshold >= 0),
  tax_rate REAL NOT NULL DEFAULT 0 CHECK (tax_rate >= 0 AND tax_rate <= 0.3),
  is_active INTEGER NOT NULL DEFAULT 1,
  expires_in_days INTEGER,
  updated_at TEXT NOT NULL,              -- ISO datetime

  UNIQUE (tenant_id, sku),
  FOREIGN KEY (tenant_id) REFERENCES tenants(id)
);

-- Physical lots; qty_on_hand is mutated in place by the ledger
CREATE TABLE IF NOT EXISTS product_batches (
  id TEXT PRIMARY KEY,
  tenant_id TEXT NOT NULL,
  product_id TEXT NOT NULL,
  batch_code TEXT,
  exp_date TEXT,                         -- ISO date
  supplier_id TEXT,
  cost_price REAL NOT NULL DEFAULT 0,
  qty_on_hand INTEGER NOT NULL DEFAULT 0 CHECK (qty_on_hand >= 0),
  received_at TEXT NOT NULL,

  FOREIGN KEY (tenant_id) REFERENCES tenants(id),
  FOREIGN KEY (product_id) REFERENCES products(id)
);

CREATE UNIQUE INDEX IF NOT EXISTS ux_product_batches_code
  ON product_batches (tenant_id, product_id, batch_code)
  WHERE batch_code IS NOT NULL;

CREATE INDEX IF NOT EXISTS ix_product_batches_product
  ON product_batches (tenant_id, product_id);

-- Append-only ledger
CREATE TABLE IF NOT EXISTS stock_movements (
  id TEXT PRIMARY KEY,
  tenant_id TEXT NOT NULL,
  product_id TEXT NOT NULL,
  batch_id TEXT NOT NULL,
  type TEXT NOT NULL CHECK (type IN ('IN', 'ADJUST')),
  qty INTEGER NOT NULL,                  -- positive for IN, signed for ADJUST
  reason TEXT,
  created_at TEXT NOT NULL,

  FOREIGN KEY (tenant_id) REFERENCES tenants(id),
  FOREIGN KEY (product_id) REFERENCES products(id),
  FOREIGN KEY (batch_id) REFERENCES product_batches(id)
);

CREATE INDEX IF NOT EXISTS ix_stock_movements_batch
  ON stock_movements (tenant_id, batch_id);
"""
