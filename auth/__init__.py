from .identity import FirebaseIdentityProvider, IdentityProvider, Principal
from .utils import authenticate_header, current_principal, peek_principal, principal_required
