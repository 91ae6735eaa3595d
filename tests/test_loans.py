import asyncio
import pytest
from datetime import timedelta

from reservation_engine.exceptions import (
    AlreadyReturned,
    InvalidState,
    NotFound,
    Unauthorized,
    Unavailable,
    ValidationError,
)
from reservation_engine.models import OPEN_LOAN_STATES, ItemKind, LoanState, TokenState
from tests.conftest import T0


@pytest.mark.asyncio
async def test_borrow_opens_active_loan(stocked, loans, alice):
    """
    Test case 1: Borrowing a copy opens an ACTIVE loan due after the loan period.
    """
    loan = await loans.borrow("copy-1", alice)

    assert loan.state is LoanState.ACTIVE
    assert loan.principal_id == "alice"
    assert loan.created_at == T0
    assert loan.due_at == T0 + timedelta(days=14)
    assert (await stocked.availability("copy-1"))["available_units"] == 0


@pytest.mark.asyncio
async def test_concurrent_borrows_of_one_copy(stocked, loans, alice, bob):
    """
    Test case 2: Two customers borrowing the last copy at once: exactly one wins.
    """
    results = await asyncio.gather(
        loans.borrow("copy-1", alice),
        loans.borrow("copy-1", bob),
        return_exceptions=True,
    )

    opened = [r for r in results if not isinstance(r, Exception)]
    refused = [r for r in results if isinstance(r, Unavailable)]
    assert len(opened) == 1
    assert len(refused) == 1
    assert refused[0].item_id == "copy-1"

    open_loans = [
        loan
        for who in (alice, bob)
        for loan in await loans.list_loans(who)
        if loan.item_id == "copy-1" and loan.state in OPEN_LOAN_STATES
    ]
    assert len(open_loans) == 1
    assert (await stocked.availability("copy-1"))["reserved_units"] == 1


@pytest.mark.asyncio
async def test_borrow_then_return_restores_availability(stocked, loans, publisher, alice, bob, clock):
    """
    Test case 3: Borrow then return leaves the copy as available as before.
    """
    before = await stocked.availability("copy-2")
    loan = await loans.borrow("copy-2", alice)

    clock.advance(days=3)
    returned = await loans.return_loan(loan.id, alice)

    assert returned.state is LoanState.RETURNED
    assert returned.returned_at == T0 + timedelta(days=3)
    assert await stocked.availability("copy-2") == before
    assert await stocked.token_state(loan.token_id) is TokenState.RELEASED
    assert publisher.routed("loan.returned")[0]["reservation_id"] == loan.id

    # The copy is AVAILABLE again
    again = await loans.borrow("copy-2", bob)
    assert again.state is LoanState.ACTIVE


@pytest.mark.asyncio
async def test_second_return_fails(stocked, loans, alice):
    """
    Test case 4: Returning an already returned loan is an invalid state.
    """
    loan = await loans.borrow("copy-1", alice)
    await loans.return_loan(loan.id, alice)

    with pytest.raises(AlreadyReturned):
        await loans.return_loan(loan.id, alice)
    assert (await stocked.availability("copy-1"))["reserved_units"] == 0


@pytest.mark.asyncio
async def test_only_owner_or_admin_may_return(stocked, loans, alice, bob, admin):
    """
    Test case 5: Only the borrower or an admin may return a loan.
    """
    loan = await loans.borrow("copy-1", alice)

    with pytest.raises(Unauthorized):
        await loans.return_loan(loan.id, bob)
    assert (await stocked.availability("copy-1"))["reserved_units"] == 1

    returned = await loans.return_loan(loan.id, admin)
    assert returned.state is LoanState.RETURNED


@pytest.mark.asyncio
async def test_return_unknown_loan(stocked, loans, alice):
    """
    Test case 6: Returning a loan that does not exist is NotFound.
    """
    with pytest.raises(NotFound):
        await loans.return_loan("missing", alice)


@pytest.mark.asyncio
async def test_stock_units_are_not_loanable(stocked, loans, alice):
    """
    Test case 7: Stock units cannot be borrowed.
    """
    with pytest.raises(ValidationError):
        await loans.borrow("product-A", alice)
    assert (await stocked.availability("product-A"))["reserved_units"] == 0


@pytest.mark.asyncio
async def test_withdrawn_copy_is_unavailable(ledger, loans, alice):
    """
    Test case 8: A copy with zero capacity cannot be borrowed.
    """
    await ledger.register_item("copy-withdrawn", ItemKind.COPY, 0)
    with pytest.raises(Unavailable):
        await loans.borrow("copy-withdrawn", alice)


@pytest.mark.asyncio
async def test_renew_extends_due_date_once(stocked, loans, alice):
    """
    Test case 9: Renewal extends the due date up to the renewal limit.
    """
    loan = await loans.borrow("copy-1", alice)

    renewed = await loans.renew(loan.id, alice)
    assert renewed.due_at == loan.due_at + timedelta(days=14)
    assert renewed.renewals == 1

    with pytest.raises(InvalidState):
        await loans.renew(loan.id, alice)


@pytest.mark.asyncio
async def test_returned_loan_cannot_be_renewed(stocked, loans, alice):
    """
    Test case 10: A returned loan cannot be renewed.
    """
    loan = await loans.borrow("copy-1", alice)
    await loans.return_loan(loan.id, alice)

    with pytest.raises(InvalidState):
        await loans.renew(loan.id, alice)


@pytest.mark.asyncio
async def test_listing_is_scoped_to_owner(stocked, loans, alice, bob, admin):
    """
    Test case 11: Customers list only their own loans; admins may list anyone's.
    """
    await loans.borrow("copy-1", alice)
    await loans.borrow("copy-2", bob)

    assert [l.item_id for l in await loans.list_loans(alice)] == ["copy-1"]
    with pytest.raises(Unauthorized):
        await loans.list_loans(alice, principal_id="bob")
    assert [l.item_id for l in await loans.list_loans(admin, principal_id="bob")] == ["copy-2"]
