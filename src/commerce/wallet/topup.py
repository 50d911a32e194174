"""Administrative wallet credit — command and handler."""

from protean import handle
from protean.exceptions import ValidationError
from protean.fields import Float, Identifier, String
from protean.utils.globals import current_domain

from commerce.domain import commerce
from commerce.wallet import ledger
from commerce.wallet.wallet import TransactionSource, Wallet


@commerce.command(part_of="Wallet")
class TopUpWallet:
    user_id = Identifier(required=True)
    amount = Float(required=True)
    note = String(max_length=500)


@commerce.command_handler(part_of=Wallet)
class TopUpWalletHandler:
    @handle(TopUpWallet)
    def top_up(self, command):
        if command.amount <= 0:
            raise ValidationError({"amount": ["Amount must be positive"]})
        transaction = ledger.credit(
            command.user_id,
            command.amount,
            ref_id=None,
            source=TransactionSource.ADJUSTMENT.value,
            note=command.note or "Wallet top-up",
        )
        return str(transaction.id)
