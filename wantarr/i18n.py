"""French and English texts shown to users and admins."""

DEFAULT_LOCALE = "en"

MESSAGES = {
    "fr": {
        "status.pending": "En attente",
        "status.fulfilled": "Disponible",
        "status.missing": "Introuvable",
        "status.rejected": "Refusé",
        "status.canceled": "Annulé",
        "description.pending": "Nous avons bien reçu votre demande. Vous serez notifié lorsqu'elle sera terminée.",
        "description.fulfilled": "Votre demande est disponible sur {service}.",
        "description.missing": "Le contenu demandé est introuvable. Nous sommes navrés de ne pas pouvoir vous satisfaire.",
        "description.rejected": "Le contenu demandé ne respecte pas les règles du serveur.",
        "description.canceled": "Votre demande a été annulée.",
        "type.movie": "Film",
        "type.episode": "Série",
        "season": "Saison",
        "episode": "Épisode",
        "episode.label": "Saison {season}, épisode {episode}",
        "error": "Erreur : {message}",
        "error.username_taken": "Ce nom d'utilisateur existe déjà merci d'en choisir un autre",
        "error.invalid_username": "Le nom d'utilisateur doit contenir entre 3 et 32 caractères (lettres, chiffres, . _ -)",
        "error.invalid_email": "Adresse email invalide",
        "error.missing_username": "Merci de préciser un nom d'utilisateur : !register <nom>",
        "error.registration_rejected": "Votre demande d'inscription a été refusée.",
        "error.registration_failed": "Erreur lors de l'inscription",
        "welcome": "Bienvenue sur {service} ! Répondez avec le nom d'utilisateur souhaité pour demander un compte.",
        "welcome.discord": "Bienvenue sur {service} ! Envoyez-moi `!register <nom>` pour demander un compte.",
        "registration.requested": "Votre demande d'inscription a été transmise aux administrateurs.",
        "registered.title": "Inscription terminée !",
        "registered": "Votre compte {service} est prêt.\nUtilisateur : {username}\nMot de passe : {password}\n{url}",
        "update.subject": "{service} : mise à jour de vos demandes",
        "update.intro": "Voici les dernières nouvelles de vos demandes :",
        "admin.new_request": "Nouvelle demande : {title}",
        "admin.new_request.description": "Un nouveau média a été ajouté à la liste de synchronisation.",
        "admin.year": "Année",
        "admin.users": "Utilisateurs",
        "admin.status": "Statut",
        "admin.thread": "Suivi : {title}",
        "admin.status_updated": "Statut mis à jour : {emoji} {label}",
        "admin.registration": "Demande d'inscription : {username}",
        "admin.registration.description": "Réagissez avec ✅ pour accepter ou ❌ pour refuser.",
        "admin.channel": "Canal",
    },
    "en": {
        "status.pending": "Pending",
        "status.fulfilled": "Available",
        "status.missing": "Not found",
        "status.rejected": "Rejected",
        "status.canceled": "Canceled",
        "description.pending": "We received your request. You will be notified once it is done.",
        "description.fulfilled": "Your request is available on {service}.",
        "description.missing": "The requested content could not be found. We are sorry we could not help.",
        "description.rejected": "The requested content does not follow the server rules.",
        "description.canceled": "Your request was canceled.",
        "type.movie": "Movie",
        "type.episode": "Show",
        "season": "Season",
        "episode": "Episode",
        "episode.label": "Season {season}, episode {episode}",
        "error": "Error: {message}",
        "error.username_taken": "This username already exists, please choose another one",
        "error.invalid_username": "The username must be 3 to 32 characters (letters, digits, . _ -)",
        "error.invalid_email": "Invalid email address",
        "error.missing_username": "Please provide a username to register: !register <username>",
        "error.registration_rejected": "Your registration request was rejected.",
        "error.registration_failed": "Registration failed",
        "welcome": "Welcome to {service}! Reply with the username you want to request an account.",
        "welcome.discord": "Welcome to {service}! Send me `!register <username>` to request an account.",
        "registration.requested": "Your registration request was sent to the administrators.",
        "registered.title": "Registration completed!",
        "registered": "Your {service} account is ready.\nUsername: {username}\nPassword: {password}\n{url}",
        "update.subject": "{service}: your requests were updated",
        "update.intro": "Here is the latest news about your requests:",
        "admin.new_request": "New request: {title}",
        "admin.new_request.description": "A new media was added to the sync list.",
        "admin.year": "Year",
        "admin.users": "Users",
        "admin.status": "Status",
        "admin.thread": "Tracking: {title}",
        "admin.status_updated": "Status updated: {emoji} {label}",
        "admin.registration": "Registration request: {username}",
        "admin.registration.description": "React with ✅ to accept or ❌ to reject.",
        "admin.channel": "Channel",
    },
}


def translate(locale: str, key: str, **values) -> str:
    """Look ``key`` up in ``locale``, falling back to English."""
    catalogue = MESSAGES.get(locale, MESSAGES[DEFAULT_LOCALE])
    text = catalogue.get(key) or MESSAGES[DEFAULT_LOCALE][key]
    return text.format(**values)
