"""
Hue Green Map - Streamlit GUI Application

Tree and heritage map of Hue with name/road/area search, a sortable result
table, tree type filtering, clustering and a buffer tool.
"""

import logging
import os

import streamlit as st

from components.treemap.config import AppVariantManager, get_treemap_config
from components.treemap.page import render_tree_map_page

VARIANT_ENV_VAR = "TREEMAP_VARIANT"

logging.basicConfig(
    level=os.environ.get("TREEMAP_LOG_LEVEL", "INFO"),
    format="%(asctime)s %(levelname)s %(name)s: %(message)s"
)
logger = logging.getLogger(__name__)

# Configure Streamlit page
st.set_page_config(
    page_title="Hue Green Map",
    page_icon="🌳",
    layout="wide",
    initial_sidebar_state="expanded"
)


def load_config():
    """Load the configuration and apply the variant named in the environment, if any."""
    config = get_treemap_config()
    variant = os.environ.get(VARIANT_ENV_VAR)
    if variant and not st.session_state.get('treemap_variant_applied'):
        if not AppVariantManager(config).apply_variant(variant):
            st.warning(f"Unknown app variant '{variant}', using the default configuration")
        st.session_state.treemap_variant_applied = True
    return config


def main():
    """Main application function"""
    try:
        render_tree_map_page(load_config())
    except Exception as e:
        logger.exception("Tree map page failed")
        st.error(f"Error loading map page: {e}")
        st.info("Please check the configuration and that the feature service is reachable.")


if __name__ == "__main__":
    main()
