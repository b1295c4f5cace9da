from __future__ import annotations

import streamlit as st

from cutly.config import configure_logging, get_settings

st.set_page_config(page_title="Cutly — Stock salon", page_icon="💇", layout="wide")
configure_logging(get_settings().log_level)

pages = [
    st.Page("home.py", title="Accueil", icon="🏠"),
    st.Page("pages/1_🧴_Products.py", title="Produits", icon="🧴"),
    st.Page("pages/2_📦_Batches.py", title="Lots & mouvements", icon="📦"),
    st.Page("pages/3_📥_CSV_Import.py", title="Import CSV", icon="📥"),
    st.Page("pages/4_🧪_Data_Management.py", title="Données", icon="🧪"),
]

st.navigation(pages).run()
