from __future__ import annotations

import streamlit as st

from cutly.config import get_settings
from cutly.db import get_conn, ensure_schema
from cutly.services.catalog import list_tenants
from cutly.services.demo_data import ensure_demo_seed

st.title("💇 Cutly — Stock produits salon")
st.caption("Catalogue multi-salon, lots avec dates d'expiration, réceptions et ajustements tracés.")

settings = get_settings()
conn = get_conn(settings.db_path)
ensure_schema(conn)

known = [str(t["id"]) for t in list_tenants(conn)]
current = st.session_state.get("tenant_id", settings.demo_tenant)

tenant_id = st.text_input("Salon (tenant)", value=current, help="Identifiant du salon, ex. 'demo'.").strip()
if known:
    st.caption("Salons connus : " + ", ".join(f"`{t}`" for t in known))

if tenant_id:
    st.session_state["tenant_id"] = tenant_id
    if ensure_demo_seed(conn, tenant_id, demo_tenant=settings.demo_tenant):
        st.success("Données de démonstration créées.")

with st.sidebar:
    st.subheader("Environnement")
    st.write(f"**Salon :** `{st.session_state.get('tenant_id', '-')}`")
    st.write(f"**Dossier :** `{settings.data_dir}`")
    st.write(f"**Base :** `{settings.db_path.name}`")

st.info(
    "Choisissez un salon ci-dessus puis utilisez la navigation : **Produits** pour le catalogue, "
    "**Lots & mouvements** pour les réceptions et ajustements, **Import CSV** pour charger une liste.",
    icon="ℹ️",
)
