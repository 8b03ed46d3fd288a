"""
FolioOracle - Streamlit Application
Portfolio tracking across brokerage accounts, with every quote and metric
supplied by the market-data oracle.
"""

import logging
import time
from typing import Dict, List, Optional

import pandas as pd
import streamlit as st
from dotenv import load_dotenv

from config import get_settings
from db_engine import init_db
from exceptions import FolioOracleError, OracleConfigurationError
from llm_engine import create_oracle_from_settings
from models import AccountType, Currency, Exchange, HistoryRange, Holding
from monitor import NEVER_SYNCED, configure_logging, is_sync_due
from services import (
    HoldingFeed,
    MarketDataService,
    PortfolioService,
    PortfolioSummary,
    PriceHistoryPoint,
    ReconciliationService,
    SessionContext,
    holding_rows,
    stored_price_history,
)

logger = logging.getLogger(__name__)

# Load environment variables
load_dotenv()
configure_logging()

# Configure Streamlit page
st.set_page_config(
    page_title="FolioOracle - Portfolio Tracker",
    page_icon="📈",
    layout="wide"
)

# Initialize database
init_db()


# ==================== SERVICES ====================
@st.cache_resource
def get_services() -> Dict[str, object]:
    """Build the oracle-backed services once per server process."""
    market_data = MarketDataService(create_oracle_from_settings())
    feed = HoldingFeed()
    return {
        "market_data": market_data,
        "feed": feed,
        "portfolio": PortfolioService(market_data, feed),
        "reconciliation": ReconciliationService(market_data, feed),
    }


# ==================== SESSION STATE ====================
if "subscriptions" not in st.session_state:
    st.session_state.subscriptions = {}

if "views" not in st.session_state:
    st.session_state.views = {}

if "metrics_swept" not in st.session_state:
    st.session_state.metrics_swept = False

if "last_price_sync" not in st.session_state:
    st.session_state.last_price_sync = NEVER_SYNCED


def get_session_context() -> SessionContext:
    if "session_context" not in st.session_state:
        st.session_state.session_context = SessionContext(market_data=get_services()["market_data"])
    return st.session_state.session_context


def unwatch_all():
    for unsubscribe in st.session_state.subscriptions.values():
        unsubscribe()
    st.session_state.subscriptions = {}
    st.session_state.views = {}


def sync_identity(ctx: SessionContext):
    """Mirror the identity provider's state into the session context."""
    if st.user.is_logged_in:
        user_id = st.user.get("sub") or st.user.get("email")
        if ctx.user_id != user_id:
            unwatch_all()
            ctx.sign_in(user_id, st.user.get("name"), st.user.get("email"))
            st.session_state.metrics_swept = False
    elif ctx.is_signed_in:
        unwatch_all()
        ctx.sign_out()


# ==================== SUBSCRIPTIONS ====================
class SnapshotView:
    """Latest holdings snapshot for one view. Owned by session state, held weakly by the feed."""

    def __init__(self):
        self.holdings: List[Holding] = []

    def on_snapshot(self, holdings: List[Holding]):
        self.holdings = holdings


def watch(view: str, user_id: str, holding_filter=None) -> List[Holding]:
    """Subscribe a view to the user's holdings once and return its latest snapshot."""
    views = st.session_state.views
    if view not in views:
        views[view] = SnapshotView()
        st.session_state.subscriptions[view] = get_services()["feed"].subscribe(
            user_id, views[view].on_snapshot, holding_filter, weak=True
        )
    return views[view].holdings


def unwatch(view: str):
    unsubscribe = st.session_state.subscriptions.pop(view, None)
    if unsubscribe is not None:
        unsubscribe()
    st.session_state.views.pop(view, None)


# ==================== FORMATTING ====================
def fmt_money(value: Optional[float]) -> str:
    return "N/A" if value is None else f"${value:,.2f}"


def fmt_number(value: Optional[float]) -> str:
    return "N/A" if value is None else f"{value:,.2f}"


def render_summary_metrics(summary: PortfolioSummary):
    col1, col2, col3, col4 = st.columns(4)
    with col1:
        st.metric("Market Value (USD)", fmt_money(summary.total_market_value))
    with col2:
        st.metric("Total Cost (USD)", fmt_money(summary.total_cost))
    with col3:
        st.metric(
            "Total Gain/Loss",
            fmt_money(summary.total_gain_loss),
            delta=f"{summary.overall_return:.2f}%"
        )
    with col4:
        st.metric("Day Gain/Loss", fmt_money(summary.day_gain_loss))


def holdings_frame(holdings: List[Holding], cad_to_usd_rate: float) -> pd.DataFrame:
    return pd.DataFrame(holding_rows(holdings, cad_to_usd_rate))


def history_frame(points: List[PriceHistoryPoint]) -> pd.DataFrame:
    df = pd.DataFrame([point.to_dict() for point in points])
    if df.empty:
        return df
    return df.set_index("date")[["close"]]


# ==================== PORTFOLIO ====================
def sweep_stale_metrics_once(user_id: str):
    """Refresh stale fundamentals once per portfolio load."""
    if st.session_state.metrics_swept:
        return
    st.session_state.metrics_swept = True
    with st.spinner("Refreshing stale company data..."):
        report = get_services()["reconciliation"].refresh_stale_metrics(user_id)
    if report.failed:
        st.warning(f"Could not refresh data for {len(report.failed)} holdings. Cached values are shown.")


def sync_prices_if_due(user_id: str):
    now = time.monotonic()
    if not is_sync_due(st.session_state.last_price_sync, get_settings().price_sync_interval_seconds, now):
        return
    st.session_state.last_price_sync = now
    try:
        get_services()["reconciliation"].sync_prices(user_id)
    except FolioOracleError as e:
        logger.error(f"Price sync failed: {e}")


@st.fragment(run_every=get_settings().price_sync_interval_seconds)
def render_portfolio_body(ctx: SessionContext):
    user_id = ctx.require_user()
    sync_prices_if_due(user_id)

    portfolio: PortfolioService = get_services()["portfolio"]
    holdings = watch("portfolio", user_id)
    rate = ctx.cad_to_usd_rate()

    st.subheader("📊 Portfolio Summary")
    st.caption(f"All values in USD. CAD to USD rate: {rate:.4f}")
    render_summary_metrics(portfolio.total_summary(user_id, rate))

    accounts = portfolio.account_summaries(user_id, rate)
    if not accounts:
        st.info("No accounts yet. Go to 'Manage' to create one!")
        return

    for account, summary in accounts:
        account_holdings = [h for h in holdings if h.account_id == account.id]
        with st.expander(f"**{account.name}** ({account.account_type.value}) - {fmt_money(summary.total_market_value)}", expanded=True):
            render_summary_metrics(summary)
            if not account_holdings:
                st.info("No holdings in this account.")
                continue
            st.dataframe(holdings_frame(account_holdings, rate), use_container_width=True, hide_index=True)
            render_holding_actions(user_id, account_holdings)


def render_holding_actions(user_id: str, holdings: List[Holding]):
    portfolio: PortfolioService = get_services()["portfolio"]
    for h in holdings:
        col1, col2, col3 = st.columns([4, 1, 1])
        with col1:
            st.text(h.ticker if h.is_stock else h.name)
        with col2:
            if h.is_stock and st.button("🔄 Refresh", key=f"refresh_{h.id}"):
                try:
                    with st.spinner(f"Refreshing {h.ticker}..."):
                        portfolio.refresh_holding(user_id, h.id)
                    st.rerun()
                except FolioOracleError as e:
                    st.error(f"❌ {e}")
        with col3:
            if st.button("🗑️ Remove", key=f"remove_{h.id}"):
                portfolio.remove_holding(user_id, h.id)
                st.rerun()


def render_portfolio(ctx: SessionContext):
    sweep_stale_metrics_once(ctx.require_user())
    render_portfolio_body(ctx)


# ==================== MANAGE ====================
def render_manage(ctx: SessionContext):
    user_id = ctx.require_user()
    portfolio: PortfolioService = get_services()["portfolio"]

    st.subheader("🏦 Create Account")
    with st.form("create_account"):
        name = st.text_input("Account Name", placeholder="e.g., My TFSA")
        account_type = st.selectbox("Account Type", list(AccountType), format_func=lambda t: t.value)
        if st.form_submit_button("Create Account", use_container_width=True):
            try:
                portfolio.create_account(user_id, name, account_type)
                st.success(f"✅ Created account {name}")
            except ValueError as e:
                st.error(f"❌ {e}")

    accounts = portfolio.list_accounts(user_id)
    if not accounts:
        st.info("Create an account before adding holdings.")
        return
    account_options = {f"{a.name} ({a.account_type.value})": a for a in accounts}

    st.markdown("---")
    st.subheader("➕ Add Stock")
    with st.form("add_stock"):
        col1, col2 = st.columns(2)
        with col1:
            account_label = st.selectbox("Account", list(account_options.keys()), key="stock_account")
            query = st.text_input("Ticker or Company Name", placeholder="e.g., AAPL, Shopify")
            exchange = st.selectbox("Exchange", list(Exchange), format_func=lambda e: e.value)
        with col2:
            shares = st.number_input("Shares", min_value=0.0, step=1.0, value=0.0)
            avg_cost = st.number_input("Average Cost per Share", min_value=0.0, step=0.01, value=0.0)

        if st.form_submit_button("Add Stock", use_container_width=True):
            try:
                with st.spinner(f"Looking up {query}..."):
                    holding = portfolio.add_stock_holding(
                        user_id, account_options[account_label].id, query, shares, avg_cost, exchange
                    )
                st.success(f"✅ Added {holding.name} ({holding.ticker})")
            except (ValueError, FolioOracleError) as e:
                st.error(f"❌ {e}")

    st.markdown("---")
    st.subheader("💵 Deposit Cash")
    with st.form("deposit_cash"):
        account_label = st.selectbox("Account", list(account_options.keys()), key="cash_account")
        currency = st.selectbox("Currency", list(Currency), format_func=lambda c: c.display_name)
        amount = st.number_input("Amount", min_value=0.0, step=100.0, value=0.0)
        if st.form_submit_button("Deposit", use_container_width=True):
            try:
                portfolio.deposit_cash(user_id, account_options[account_label].id, amount, currency)
                st.success(f"✅ Deposited {amount:,.2f} {currency.value}")
            except (ValueError, FolioOracleError) as e:
                st.error(f"❌ {e}")

    st.markdown("---")
    st.subheader("🗑️ Delete Account")
    account_label = st.selectbox("Account", list(account_options.keys()), key="delete_account")
    confirm = st.checkbox("I understand this also deletes every holding in the account.")
    if st.button("Delete Account", disabled=not confirm):
        portfolio.delete_account(user_id, account_options[account_label].id)
        st.rerun()


# ==================== TICKER DETAIL ====================
@st.cache_data(ttl=300, show_spinner=False)
def load_details(ticker: str, exchange: Exchange):
    return get_services()["market_data"].fetch_ticker_details(ticker, exchange)


@st.cache_data(ttl=300, show_spinner=False)
def load_news(ticker: str, exchange: Exchange):
    return get_services()["market_data"].fetch_news(ticker, exchange)


@st.cache_data(ttl=300, show_spinner=False)
def load_history(ticker: str, exchange: Exchange, history_range: HistoryRange):
    return get_services()["market_data"].fetch_price_history(ticker, exchange, history_range)


@st.cache_data(ttl=3600, show_spinner=False)
def load_chart(ticker: str, closes: tuple):
    points = [PriceHistoryPoint(label=str(i), close=c) for i, c in enumerate(closes)]
    return get_services()["market_data"].generate_chart_svg(ticker, points)


def render_ticker_detail(ctx: SessionContext):
    user_id = ctx.require_user()
    portfolio: PortfolioService = get_services()["portfolio"]

    held = sorted({(h.ticker, h.exchange) for h in portfolio.list_holdings(user_id) if h.is_stock})
    if not held:
        st.info("Add a stock to see its details.")
        return

    ticker, exchange = st.selectbox(
        "Ticker", held, format_func=lambda pair: f"{pair[0]} ({pair[1].value})"
    )

    # Re-subscribe when the selected ticker changes
    view = f"ticker:{ticker}:{exchange.value}"
    for existing in [v for v in st.session_state.subscriptions if v.startswith("ticker:") and v != view]:
        unwatch(existing)
    positions = watch(view, user_id, lambda h: h.ticker == ticker and h.exchange == exchange)

    try:
        with st.spinner("Fetching details..."):
            details = load_details(ticker, exchange)
    except FolioOracleError as e:
        st.error(f"❌ {e}")
        return
    if details is None:
        st.error(f"Could not fetch details for {ticker}.")
        return

    st.subheader(f"{details.name} ({ticker})")
    col1, col2, col3, col4 = st.columns(4)
    with col1:
        delta = None if details.day_change is None else (
            f"{details.day_change:+.2f} ({fmt_number(details.day_change_percent)}%)"
        )
        st.metric("Price", fmt_money(details.current_price), delta=delta)
    with col2:
        st.metric("Market Cap", details.market_cap or "N/A")
    with col3:
        st.metric("P/E", fmt_number(details.pe_ratio))
    with col4:
        st.metric("52W Range", f"{fmt_number(details.fifty_two_week_low)} - {fmt_number(details.fifty_two_week_high)}")
    if details.company_profile:
        st.write(details.company_profile)

    # Fall back to the month of closes saved with the holding
    chart_points = details.price_history
    if len(chart_points) < 2 and positions:
        chart_points = stored_price_history(positions[0])
    if len(chart_points) >= 2:
        svg = load_chart(ticker, tuple(point.close for point in chart_points))
        if svg:
            st.markdown(svg, unsafe_allow_html=True)

    st.markdown("### Price History")
    history_range = st.radio(
        "Range", list(HistoryRange), format_func=lambda r: r.value, horizontal=True, index=3
    )
    try:
        with st.spinner("Fetching history..."):
            points = load_history(ticker, exchange, history_range)
        if points:
            st.line_chart(history_frame(points))
        else:
            st.info("No price history available.")
    except FolioOracleError as e:
        st.error(f"❌ {e}")

    st.markdown("### Your Positions")
    if positions:
        st.dataframe(holdings_frame(positions, ctx.cad_to_usd_rate()), use_container_width=True, hide_index=True)
    else:
        st.info("You no longer hold this ticker.")

    st.markdown("### Latest News")
    try:
        for item in load_news(ticker, exchange):
            title = f"[{item.title}]({item.url})" if item.url else item.title
            st.markdown(f"- {title}  \n  *{item.source} · {item.published_at}*")
    except FolioOracleError as e:
        st.error(f"❌ {e}")


# ==================== PROFILE ====================
def render_profile(ctx: SessionContext):
    user_id = ctx.require_user()
    st.subheader("👤 Profile")
    st.text(f"Signed in as {ctx.display_name or ctx.email or user_id}")

    profile = PortfolioService.get_user_profile(user_id)
    current = profile.estimated_earnings if profile and profile.estimated_earnings is not None else 0.0

    with st.form("profile"):
        earnings = st.number_input("Estimated Annual Earnings", value=float(current), step=1000.0)
        if st.form_submit_button("Save", use_container_width=True):
            PortfolioService.update_user_profile(user_id, earnings)
            st.success("✅ Profile saved!")

    if st.button("Log out"):
        unwatch_all()
        ctx.sign_out()
        st.logout()


# ==================== MAIN APP ====================
def main():
    """Main application entry point."""
    st.title("📈 FolioOracle")
    st.markdown("*Portfolio Tracker powered by an AI market-data oracle*")

    try:
        get_settings().require_oracle()
        ctx = get_session_context()
    except OracleConfigurationError as e:
        st.error(f"❌ {e}")
        st.stop()

    sync_identity(ctx)
    if not ctx.is_signed_in:
        st.info("Please log in to view your portfolio.")
        if st.button("Log in"):
            st.login()
        st.stop()

    page = st.sidebar.radio("Navigate", ["Portfolio", "Manage", "Ticker Detail", "Profile"])

    if page != "Ticker Detail":
        for view in [v for v in st.session_state.subscriptions if v.startswith("ticker:")]:
            unwatch(view)

    if page == "Portfolio":
        render_portfolio(ctx)
    elif page == "Manage":
        render_manage(ctx)
    elif page == "Ticker Detail":
        render_ticker_detail(ctx)
    else:
        render_profile(ctx)

    # Footer
    st.markdown("---")
    st.markdown(
        "<div style='text-align: center; color: gray;'>"
        "⚠️ Market data is generated by an AI model and may be inaccurate. Not financial advice.</div>",
        unsafe_allow_html=True
    )


if __name__ == "__main__":
    main()
